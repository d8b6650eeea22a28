"""Request authentication flow for the backend API client.

Every outbound request passes through ``SessionAuth``: credentials are
resolved through the session manager before dispatch, attached as headers,
and a 401 response drives one refresh-and-retry before the session ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncGenerator, Generator

import httpx

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.models.errors import (
    CredentialError,
    NetworkError,
    NetworkUnavailableError,
    ReauthRequiredError,
    StorageError,
    UnauthenticatedError,
)
from healtrack.auth.session.manager import SessionManager
from healtrack.config import ClientConfig

logger = logging.getLogger(__name__)

POLICY_EXTENSION = "healtrack.policy"
ROTATED_TOKEN_HEADER = "newAccessToken"


@dataclass(frozen=True)
class RequestPolicy:
    """Which credentials a request needs.

    Identity is required for every authenticated endpoint. Calendar
    delegation is attached when available. Conferencing is attached when
    present and fresh, and only resolved (possibly interactively) for
    endpoints that require it.
    """

    requires_identity: bool = True
    attach_calendar: bool = True
    requires_conferencing: bool = False
    allow_interaction: bool = False


DEFAULT_POLICY = RequestPolicy()
ANONYMOUS = RequestPolicy(requires_identity=False, attach_calendar=False)
CONFERENCING = RequestPolicy(requires_conferencing=True, allow_interaction=True)


class AttemptPhase(str, Enum):
    FIRST = "first"
    RETRY = "retry"
    EXHAUSTED = "exhausted"


@dataclass
class AuthAttempt:
    """Retry bookkeeping for one request: at most ``max_retries`` after a 401."""

    max_retries: int = 1
    retries: int = 0
    phase: AttemptPhase = AttemptPhase.FIRST

    def record_unauthorized(self) -> bool:
        """Record a 401. Returns True if the request may be retried."""
        if self.retries >= self.max_retries:
            self.phase = AttemptPhase.EXHAUSTED
            return False
        self.retries += 1
        self.phase = AttemptPhase.RETRY
        return True


class SessionAuth(httpx.Auth):
    """httpx auth flow backed by the session manager."""

    requires_request_body = True

    def __init__(self, session_manager: SessionManager, config: ClientConfig, max_retries: int = 1):
        self.session_manager = session_manager
        self.config = config
        self.max_retries = max_retries

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("SessionAuth only supports httpx.AsyncClient")
        yield request  # pragma: no cover

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        policy: RequestPolicy = request.extensions.get(POLICY_EXTENSION, DEFAULT_POLICY)
        if not policy.requires_identity:
            yield request
            return

        attempt = AuthAttempt(max_retries=self.max_retries)
        while True:
            identity = await self._resolve_identity()
            await self._attach(request, identity, policy)

            response = yield request
            await self._adopt_rotated_token(response)

            if response.status_code != 401:
                return

            # The server is authoritative over our clock-based freshness guess
            await self.session_manager.invalidate(CredentialType.IDENTITY, token=identity.token)
            if not attempt.record_unauthorized():
                logger.warning(f"{request.method} {request.url.path} rejected again after refresh")
                await self._end_session()
                raise UnauthenticatedError(
                    "Request was rejected after refreshing credentials",
                    CredentialType.IDENTITY,
                )
            logger.info(f"{request.method} {request.url.path} got 401, retrying once")

    async def _resolve_identity(self) -> Credential:
        try:
            return await self.session_manager.ensure_fresh(CredentialType.IDENTITY)
        except UnauthenticatedError:
            raise
        except ReauthRequiredError as e:
            await self._end_session()
            raise UnauthenticatedError(
                "Sign-in required", CredentialType.IDENTITY
            ) from e
        except NetworkError as e:
            raise NetworkUnavailableError(
                f"Could not refresh credentials: {e}", CredentialType.IDENTITY
            ) from e

    async def _attach(
        self, request: httpx.Request, identity: Credential, policy: RequestPolicy
    ) -> None:
        request.headers["Authorization"] = f"Bearer {identity.token}"

        calendar = await self._resolve_calendar(policy)
        if calendar is not None:
            request.headers[self.config.calendar_header] = f"Bearer {calendar.token}"
        else:
            request.headers.pop(self.config.calendar_header, None)

        conferencing = await self._resolve_conferencing(policy)
        if conferencing is not None:
            request.headers[self.config.conferencing_header] = conferencing.token
        else:
            request.headers.pop(self.config.conferencing_header, None)

    async def _resolve_calendar(self, policy: RequestPolicy) -> Credential | None:
        if not policy.attach_calendar:
            return None
        if self.session_manager.get_session().calendar is None:
            return None
        try:
            return await self.session_manager.ensure_fresh(CredentialType.CALENDAR_DELEGATION)
        except UnauthenticatedError:
            raise
        except CredentialError as e:
            logger.debug(f"Sending request without calendar delegation: {e}")
            return None

    async def _resolve_conferencing(self, policy: RequestPolicy) -> Credential | None:
        if policy.requires_conferencing:
            return await self.session_manager.ensure_fresh(
                CredentialType.CONFERENCING, interactive=policy.allow_interaction
            )

        return self.session_manager.usable_credential(CredentialType.CONFERENCING)

    async def _adopt_rotated_token(self, response: httpx.Response) -> None:
        rotated = response.headers.get(ROTATED_TOKEN_HEADER)
        if rotated:
            await self.session_manager.adopt_rotated_token(rotated)

    async def _end_session(self) -> None:
        try:
            await self.session_manager.logout()
        except StorageError as e:
            logger.error(f"Logout after authentication failure was incomplete: {e}")
