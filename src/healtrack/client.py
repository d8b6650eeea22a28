"""Process-wide handle for the HealTrack session layer.

Composes configuration, credential store, provider adapters, session manager
and the authenticated API client. Create one at app start, pass it to the
screens that need it, and close it on exit.
"""

from __future__ import annotations

import logging
from types import TracebackType

from healtrack.auth.models.credentials import Session
from healtrack.auth.providers.base import BrowserAuthHandler, ConsentHandler
from healtrack.auth.providers.calendar import CalendarDelegationProvider
from healtrack.auth.providers.conferencing import ConferencingProvider
from healtrack.auth.providers.identity import IdentityProvider
from healtrack.auth.session.manager import SessionManager
from healtrack.auth.storage.store import CredentialStore, JsonFileCredentialStore
from healtrack.config import ClientConfig
from healtrack.http.client import ApiClient, ConnectivityCheck

logger = logging.getLogger(__name__)


class HealtrackClient:
    """Owns the session manager and API client for the lifetime of the app.

    Lifecycle:
        client = HealtrackClient(config, consent_handler, browser_handler)
        await client.start()   # restores any stored session
        ...
        await client.close()   # on process exit

    ``async with HealtrackClient(...) as client`` does both.
    """

    def __init__(
        self,
        config: ClientConfig,
        consent_handler: ConsentHandler,
        browser_handler: BrowserAuthHandler,
        store: CredentialStore | None = None,
        connectivity_check: ConnectivityCheck | None = None,
    ):
        self.config = config
        self.store = store or JsonFileCredentialStore(config.storage_path)

        self.identity = IdentityProvider(config, consent_handler)
        self.calendar = CalendarDelegationProvider(config)
        self.conferencing = ConferencingProvider(config, browser_handler)

        self.sessions = SessionManager(
            self.store,
            self.identity,
            self.calendar,
            self.conferencing,
            config=config,
        )
        self.api = ApiClient(config, self.sessions, connectivity_check=connectivity_check)
        self._started = False

    @property
    def session(self) -> Session:
        return self.sessions.get_session()

    async def start(self) -> Session:
        """Restore the stored session. Safe to call more than once."""
        if not self._started:
            await self.sessions.restore()
            self._started = True
            logger.info("HealTrack client started")
        return self.sessions.get_session()

    async def close(self) -> None:
        """Release HTTP resources. Session state stays persisted."""
        await self.api.close()
        await self.identity.close()
        await self.calendar.close()
        await self.conferencing.close()
        self._started = False

    async def __aenter__(self) -> HealtrackClient:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
