"""Calendar delegation adapter.

The backend trades a one-time server auth code for a delegation token that
lets it act on the doctor's calendar. The token is opaque and its lifetime is
fixed by the provider, so expiry is tracked client-side from the exchange time.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

import httpx
from pydantic import ValidationError

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.models.errors import (
    DelegationUnavailableError,
    MalformedResponseError,
    NetworkError,
    ReauthRequiredError,
)
from healtrack.auth.models.tokens import ExchangeRequest, ExchangeResponse
from healtrack.auth.providers.base import parse_json_body, transport_error
from healtrack.config import ClientConfig

logger = logging.getLogger(__name__)

AuthCodeSource = Callable[[], Awaitable[str | None]]


class CalendarDelegationProvider:
    """Obtains calendar delegation credentials through the backend exchange.

    Cannot refresh from stored state alone: every refresh needs a brand new
    server auth code, which ``auth_code_source`` supplies after making sure
    the identity credential is fresh.
    """

    credential_type = CredentialType.CALENDAR_DELEGATION
    silent_refresh = True

    def __init__(
        self,
        config: ClientConfig,
        auth_code_source: AuthCodeSource | None = None,
        clock: Callable[[], float] = time.time,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.auth_code_source = auth_code_source
        self._clock = clock
        self._http_client = http_client or httpx.AsyncClient(timeout=config.request_timeout)

    async def acquire(self, user_interaction_allowed: bool) -> Credential:
        return await self.exchange(await self._next_auth_code())

    async def refresh(self, existing: Credential) -> Credential:
        logger.debug("Refreshing calendar delegation with a new server auth code")
        return await self.exchange(await self._next_auth_code())

    async def exchange(self, server_auth_code: str | None) -> Credential:
        """Trade a server auth code for a calendar delegation credential.

        Args:
            server_auth_code: One-time code from the identity provider

        Returns:
            New calendar delegation credential expiring after the known lifetime

        Raises:
            DelegationUnavailableError: If there is no code, or the exchange returned no token
            ReauthRequiredError: If the backend rejected the code
            NetworkError: On transport failures and server errors
            MalformedResponseError: If the response cannot be parsed
        """
        if not server_auth_code:
            raise DelegationUnavailableError(
                "No server auth code available for calendar exchange", self.credential_type
            )

        url = self.config.exchange_url
        logger.debug(f"Exchanging server auth code at {url}")

        try:
            response = await self._http_client.post(
                url,
                json=ExchangeRequest(server_auth_code=server_auth_code).model_dump(by_alias=True),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise transport_error(e, self.credential_type, "calendar exchange") from e

        exchange_response = self._parse_exchange_response(response)
        if not exchange_response.has_token():
            reason = exchange_response.error or "no error reported"
            logger.warning(f"Calendar exchange succeeded without a delegation token: {reason}")
            raise DelegationUnavailableError(
                f"Calendar exchange returned no delegation token ({reason})", self.credential_type
            )

        # Lifetime is not introspectable from the token; recompute at every exchange
        now = self._clock()
        credential = Credential(
            type=self.credential_type,
            token=exchange_response.access_token,
            issued_at=now,
            expires_at=now + self.config.calendar_lifetime,
            refresh_token=exchange_response.refresh_token,
        )
        logger.info("Calendar delegation credential obtained")
        return credential

    async def _next_auth_code(self) -> str | None:
        if self.auth_code_source is None:
            raise DelegationUnavailableError(
                "No server auth code source configured", self.credential_type
            )
        return await self.auth_code_source()

    def _parse_exchange_response(self, response: httpx.Response) -> ExchangeResponse:
        if response.status_code >= 500:
            raise NetworkError(
                f"Calendar exchange failed with server error {response.status_code}",
                self.credential_type,
            )
        if response.status_code in (400, 401, 403):
            logger.warning(f"Calendar exchange rejected with {response.status_code}")
            raise ReauthRequiredError(
                f"Server auth code rejected ({response.status_code})", self.credential_type
            )
        if response.status_code != 200:
            raise NetworkError(
                f"Calendar exchange failed with status {response.status_code}",
                self.credential_type,
            )

        body = parse_json_body(response, self.credential_type)
        try:
            return ExchangeResponse(**body)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Invalid calendar exchange response: {e}", self.credential_type
            ) from e

    async def close(self) -> None:
        await self._http_client.aclose()
