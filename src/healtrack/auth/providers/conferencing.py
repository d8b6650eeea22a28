"""Conferencing provider adapter.

Tokens come from a redirect-based flow: the provider sends the browser back
to the app's custom URL scheme with ``access_token`` and ``expires_in`` on
the callback URL. There is no silent refresh; refreshing means running the
interactive flow again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.models.errors import (
    CredentialError,
    MalformedResponseError,
    NetworkError,
    ReauthRequiredError,
    UserCancelledError,
)
from healtrack.auth.models.flow import ConferencingAuthorizationRequest, ConferencingCallback
from healtrack.auth.primitives.expiry import MAX_REPORTED_LIFETIME
from healtrack.auth.primitives.redirect import RedirectRouter
from healtrack.auth.providers.base import BrowserAuthHandler
from healtrack.config import ClientConfig

logger = logging.getLogger(__name__)


class DeepLinkAuthHandler:
    """Browser handler driven by intercepted deep links.

    ``launcher`` opens the authorization URL in the system browser. The host
    app forwards intercepted URLs to ``handle_url`` and reports a closed
    browser through ``browser_closed``.
    """

    def __init__(self, launcher: Callable[[str], Awaitable[None]], router: RedirectRouter | None = None):
        self.launcher = launcher
        self.router = router or RedirectRouter()

    async def open_auth_session(self, auth_url: str, callback_url: str) -> str | None:
        channel = self.router.open(callback_url)
        try:
            await self.launcher(auth_url)
            return await channel.wait()
        except UserCancelledError:
            return None
        finally:
            self.router.close(channel)

    def handle_url(self, url: str) -> bool:
        return self.router.handle_url(url)

    def browser_closed(self) -> None:
        self.router.cancel_all()


class ConferencingProvider:
    """Obtains conferencing credentials through the redirect flow."""

    credential_type = CredentialType.CONFERENCING
    silent_refresh = False

    def __init__(
        self,
        config: ClientConfig,
        browser_handler: BrowserAuthHandler,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.browser_handler = browser_handler
        self._clock = clock

    def authorization_request(self) -> ConferencingAuthorizationRequest:
        return ConferencingAuthorizationRequest(
            authorization_endpoint=self.config.conferencing_auth_url,
            client_id=self.config.conferencing_client_id,
            callback_url=self.config.conferencing_callback_url,
        )

    async def acquire(self, user_interaction_allowed: bool) -> Credential:
        """Run the redirect flow and parse the token from the callback.

        Raises:
            ReauthRequiredError: If interaction is not allowed in this context
            UserCancelledError: If the browser was closed or the window elapsed
            MalformedResponseError: If the callback lacks a usable token or lifetime
        """
        if not user_interaction_allowed:
            raise ReauthRequiredError(
                "Conferencing credential can only be obtained interactively",
                self.credential_type,
            )

        auth_url = self.authorization_request().build_authorization_url()
        logger.debug("Starting conferencing authorization flow")

        try:
            callback_url = await asyncio.wait_for(
                self.browser_handler.open_auth_session(
                    auth_url, self.config.conferencing_callback_url
                ),
                self.config.interactive_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UserCancelledError(
                "Conferencing authorization window elapsed", self.credential_type
            ) from e
        except CredentialError:
            raise
        except Exception as e:
            raise NetworkError(
                f"Conferencing authorization failed: {e}", self.credential_type
            ) from e

        if callback_url is None:
            raise UserCancelledError(
                "User closed the conferencing authorization browser", self.credential_type
            )

        # Capture time is taken before parsing so expires_in counts from the redirect
        captured_at = self._clock()
        return self._credential_from_callback(callback_url, captured_at)

    async def refresh(self, existing: Credential) -> Credential:
        return await self.acquire(user_interaction_allowed=True)

    def _credential_from_callback(self, callback_url: str, captured_at: float) -> Credential:
        callback = ConferencingCallback.from_url(callback_url)

        if callback.is_error():
            if callback.error == "access_denied":
                raise UserCancelledError(
                    "User denied conferencing access", self.credential_type
                )
            logger.error(
                f"Conferencing callback error: {callback.error} - "
                f"{callback.error_description or ''}"
            )
            raise MalformedResponseError(
                f"Conferencing callback error: {callback.error}", self.credential_type
            )

        if not callback.access_token:
            raise MalformedResponseError(
                "Conferencing callback missing access_token", self.credential_type
            )

        try:
            expires_in = int(callback.expires_in or "")
        except ValueError as e:
            raise MalformedResponseError(
                f"Conferencing callback has invalid expires_in: {callback.expires_in!r}",
                self.credential_type,
            ) from e
        if not 0 < expires_in <= MAX_REPORTED_LIFETIME:
            raise MalformedResponseError(
                f"Conferencing callback has out-of-range expires_in: {expires_in}",
                self.credential_type,
            )

        logger.info(f"Conferencing credential obtained, valid for {expires_in}s")
        return Credential(
            type=self.credential_type,
            token=callback.access_token,
            issued_at=captured_at,
            expires_at=captured_at + expires_in,
        )

    async def close(self) -> None:
        return None
