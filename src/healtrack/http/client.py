"""Authenticated HTTP client for the clinic backend."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx

from healtrack.auth.models.errors import NetworkUnavailableError
from healtrack.auth.session.manager import SessionManager
from healtrack.config import ClientConfig
from healtrack.http.auth import DEFAULT_POLICY, POLICY_EXTENSION, RequestPolicy, SessionAuth

logger = logging.getLogger(__name__)

ConnectivityCheck = Callable[[], Awaitable[bool]]


class ApiClient:
    """Backend client whose every request goes through SessionAuth.

    Transport failures (timeouts, no connectivity) surface as
    NetworkUnavailableError and never touch credential state.
    """

    def __init__(
        self,
        config: ClientConfig,
        session_manager: SessionManager,
        connectivity_check: ConnectivityCheck | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the API client.

        Args:
            config: Client configuration (base URL, timeout, header names)
            session_manager: Source of credentials for every request
            connectivity_check: Optional platform probe run before each request
            transport: Optional httpx transport, mainly for tests
        """
        self.config = config
        self.auth = SessionAuth(session_manager, config)
        self._connectivity_check = connectivity_check
        self._http_client = httpx.AsyncClient(
            base_url=config.api_base_url,
            auth=self.auth,
            timeout=config.request_timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        policy: RequestPolicy = DEFAULT_POLICY,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request with the credentials ``policy`` calls for.

        Raises:
            NetworkUnavailableError: On timeouts and connection failures
            UnauthenticatedError: If the doctor has to sign in again
        """
        if self._connectivity_check is not None and not await self._connectivity_check():
            raise NetworkUnavailableError("No internet connection available")

        extensions = dict(kwargs.pop("extensions", None) or {})
        extensions[POLICY_EXTENSION] = policy

        try:
            return await self._http_client.request(method, url, extensions=extensions, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {url} timed out")
            raise NetworkUnavailableError(
                "Request timed out. Please check your internet connection."
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {url} failed in transport: {e}")
            raise NetworkUnavailableError(
                "Unable to reach the server. Please check your internet connection."
            ) from e

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def close(self) -> None:
        if not self._http_client.is_closed:
            await self._http_client.aclose()
