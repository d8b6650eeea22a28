"""Session manager: single source of truth for the signed-in doctor's credentials.

Aggregates the identity, calendar delegation and conferencing credentials,
decides when each needs refreshing, serializes refreshes per credential type,
and persists or clears the session. It is the only component that writes to
the credential store and the only one that turns a credential failure into
a logout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable

from healtrack.auth.models.credentials import (
    Credential,
    CredentialState,
    CredentialType,
    Session,
)
from healtrack.auth.models.errors import (
    CredentialError,
    DelegationUnavailableError,
    MalformedResponseError,
    NetworkError,
    ReauthRequiredError,
    SessionEndedError,
    StorageError,
    UnauthenticatedError,
    UserCancelledError,
)
from healtrack.auth.primitives.expiry import classify, needs_refresh, seconds_remaining
from healtrack.auth.providers.base import CredentialProvider
from healtrack.auth.providers.calendar import CalendarDelegationProvider
from healtrack.auth.providers.identity import IdentityProvider
from healtrack.auth.session.locks import RefreshLocks
from healtrack.auth.storage.keys import ADMIN_FLAG, DOCTOR_ID, session_keys
from healtrack.auth.storage.store import CredentialStore
from healtrack.config import ClientConfig

logger = logging.getLogger(__name__)

SessionListener = Callable[[Session], Awaitable[None]]


class SessionManager:
    """Coordinates the credential lifecycle for one signed-in doctor.

    All state changes happen on the event loop that owns the manager.
    Consumers only ever receive immutable Session snapshots.
    """

    def __init__(
        self,
        store: CredentialStore,
        identity: IdentityProvider,
        calendar: CalendarDelegationProvider,
        conferencing: CredentialProvider,
        config: ClientConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the session manager.

        Args:
            store: Durable credential store
            identity: Identity provider adapter
            calendar: Calendar delegation adapter
            conferencing: Conferencing provider adapter
            config: Client configuration (margins and timeouts)
            clock: Source of the current Unix time
        """
        self.config = config or ClientConfig()
        self._store = store
        self._identity = identity
        self._calendar = calendar
        self._providers: dict[CredentialType, CredentialProvider] = {
            CredentialType.IDENTITY: identity,
            CredentialType.CALENDAR_DELEGATION: calendar,
            CredentialType.CONFERENCING: conferencing,
        }
        self._margins = {
            CredentialType.IDENTITY: self.config.identity_margin,
            CredentialType.CALENDAR_DELEGATION: self.config.calendar_margin,
            CredentialType.CONFERENCING: self.config.conferencing_margin,
        }
        self._clock = clock
        self._generation = 0
        self._session = Session()
        self._locks = RefreshLocks()
        self._reauth_required: set[CredentialType] = set()
        self._listeners: list[SessionListener] = []

        if calendar.auth_code_source is None:
            calendar.auth_code_source = self.issue_server_auth_code

    # ================================
    # Read access
    # ================================

    @property
    def generation(self) -> int:
        return self._generation

    def get_session(self) -> Session:
        """Return the current session snapshot. Never performs I/O."""
        return self._session

    def usable_credential(self, credential_type: CredentialType) -> Credential | None:
        """Return the credential only if it is present and fresh. No refresh."""
        credential = self._session.get(credential_type)
        if needs_refresh(credential, self._clock(), self._margins[credential_type]):
            return None
        return credential

    def state(self, credential_type: CredentialType) -> CredentialState:
        """Report where a credential type is in its lifecycle."""
        if self._locks.is_held(credential_type):
            if self._session.get(credential_type) is None:
                return CredentialState.ACQUIRING
            return CredentialState.REFRESHING
        if credential_type in self._reauth_required:
            return CredentialState.REAUTH_REQUIRED
        return classify(
            self._session.get(credential_type), self._clock(), self._margins[credential_type]
        )

    def on_session_changed(self, listener: SessionListener) -> Callable[[], None]:
        """Register an async listener called with every new session snapshot.

        Returns:
            A function that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ================================
    # Session lifecycle
    # ================================

    async def restore(self) -> Session:
        """Rebuild the in-memory session from the credential store.

        Called once at start-up. Corrupt or partial stored state yields an
        empty credential slot, never an exception.
        """
        identity = await self._store.read_credential(CredentialType.IDENTITY)
        if identity is None:
            logger.info("No stored session found")
            self._session = Session(generation=self._generation)
            await self._notify()
            return self._session

        calendar = await self._store.read_credential(CredentialType.CALENDAR_DELEGATION)
        conferencing = await self._store.read_credential(CredentialType.CONFERENCING)
        is_admin = await self._store.read(ADMIN_FLAG)
        doctor_id = await self._store.read(DOCTOR_ID)

        self._session = Session(
            identity=identity,
            calendar=calendar,
            conferencing=conferencing,
            is_admin=is_admin == "true",
            doctor_id=doctor_id or None,
            generation=self._generation,
        )
        logger.info("Session restored from credential store")
        await self._notify()
        return self._session

    async def sign_in(self) -> Session:
        """Run interactive identity consent and set up calendar delegation.

        The consent's one-time server auth code is exchanged straight away.
        If that exchange fails the doctor stays signed in with calendar sync
        disabled.

        Raises:
            UserCancelledError: If the user dismissed the consent screen
            NetworkError: If the identity provider could not be reached
        """
        await self._await_lock_free(CredentialType.IDENTITY)

        generation = self._generation
        server_auth_codes: list[str | None] = []

        async def acquire_identity() -> Credential:
            credential, server_auth_code = await self._identity.sign_in(
                user_interaction_allowed=True
            )
            server_auth_codes.append(server_auth_code)
            return credential

        entry = self._locks.start(
            CredentialType.IDENTITY,
            generation,
            lambda: self._settle(
                CredentialType.IDENTITY,
                generation,
                self._session.identity,
                acquire_identity(),
                interactive=True,
            ),
        )
        await entry.wait()

        server_auth_code = server_auth_codes[0] if server_auth_codes else None
        await self._await_lock_free(CredentialType.CALENDAR_DELEGATION)
        try:
            calendar_entry = self._locks.start(
                CredentialType.CALENDAR_DELEGATION,
                generation,
                lambda: self._settle(
                    CredentialType.CALENDAR_DELEGATION,
                    generation,
                    self._session.calendar,
                    self._calendar.exchange(server_auth_code),
                    interactive=False,
                ),
            )
            await calendar_entry.wait()
        except SessionEndedError:
            raise
        except CredentialError as e:
            logger.warning(f"Signed in without calendar sync: {e}")

        return self._session

    async def connect_conferencing(self) -> Credential:
        """Run the interactive conferencing flow, replacing any current token.

        Raises:
            UserCancelledError: If the user closed the browser
            UnauthenticatedError: If nobody is signed in
        """
        if not self._session.is_logged_in:
            raise UnauthenticatedError("Sign in before connecting conferencing")

        in_flight = self._locks.get(CredentialType.CONFERENCING)
        if in_flight is not None:
            return await in_flight.wait()

        generation = self._generation
        provider = self._providers[CredentialType.CONFERENCING]
        entry = self._locks.start(
            CredentialType.CONFERENCING,
            generation,
            lambda: self._settle(
                CredentialType.CONFERENCING,
                generation,
                self._session.conferencing,
                provider.acquire(user_interaction_allowed=True),
                interactive=True,
            ),
        )
        return await entry.wait()

    async def set_session(
        self,
        *,
        identity: Credential | None = None,
        calendar: Credential | None = None,
        conferencing: Credential | None = None,
        is_admin: bool | None = None,
        doctor_id: str | None = None,
    ) -> Session:
        """Apply a partial update. Arguments left as None are unchanged.

        Raises:
            UnauthenticatedError: If flags are set without a signed-in identity
        """
        generation = self._generation
        for credential in (identity, calendar, conferencing):
            if credential is not None:
                await self._commit(credential, generation)

        if is_admin is None and doctor_id is None:
            return self._session
        if not self._session.is_logged_in:
            raise UnauthenticatedError("Cannot set session flags without a signed-in doctor")

        values: dict[str, str | None] = {}
        updates: dict[str, object] = {}
        if is_admin is not None:
            values[ADMIN_FLAG] = "true" if is_admin else "false"
            updates["is_admin"] = is_admin
        if doctor_id is not None:
            values[DOCTOR_ID] = doctor_id
            updates["doctor_id"] = doctor_id

        persisted = self._session.persisted
        try:
            await self._store.write_many(values)
        except StorageError as e:
            logger.warning(f"Failed to persist session flags, continuing in memory: {e}")
            persisted = False

        self._check_generation(generation, CredentialType.IDENTITY)
        self._session = replace(self._session, persisted=persisted, **updates)
        await self._notify()
        return self._session

    async def logout(self) -> None:
        """End the session: clear the store, reset memory, release refresh locks.

        In-flight refreshes are not awaited. They see the new session
        generation when they settle and discard their result. Calling this
        twice is harmless.

        Raises:
            StorageError: If some stored keys could not be removed; memory is
                cleared regardless
        """
        was_logged_in = self._session.is_logged_in
        if self._session != Session(generation=self._generation) or len(self._locks):
            self._generation += 1
            self._locks.release_all()
            self._reauth_required.clear()
            self._session = Session(generation=self._generation)
            changed = True
        else:
            changed = False

        storage_error: StorageError | None = None
        try:
            await self._store.clear_all(session_keys())
        except StorageError as e:
            logger.error(f"Logout left stored keys behind: {e.failed_keys}")
            storage_error = e
            self._session = replace(self._session, persisted=False)

        if was_logged_in:
            await self._identity.sign_out()
            logger.info("Session ended")

        if changed:
            await self._notify()
        if storage_error is not None:
            raise storage_error

    # ================================
    # Credential coordination
    # ================================

    async def ensure_fresh(
        self, credential_type: CredentialType, *, interactive: bool = False
    ) -> Credential:
        """Return a credential safe to use right now, refreshing it if needed.

        Concurrent callers for the same type share one in-flight refresh and
        see the same credential or the same exception.

        Args:
            credential_type: Credential to resolve
            interactive: Whether the user may be shown a consent or browser flow

        Returns:
            A fresh credential

        Raises:
            ReauthRequiredError: If the credential cannot be obtained silently
            UserCancelledError: If an interactive flow was abandoned
            NetworkError: If the provider could not be reached
            DelegationUnavailableError: If calendar delegation is unavailable
            SessionEndedError: If the session was logged out mid-refresh
        """
        current = self._session.get(credential_type)
        if not needs_refresh(current, self._clock(), self._margins[credential_type]):
            return current

        in_flight = self._locks.get(credential_type)
        if in_flight is not None:
            logger.debug(f"Joining in-flight {credential_type.value} refresh")
            return await in_flight.wait()

        if current is None and not interactive:
            raise ReauthRequiredError(
                f"No {credential_type.value} credential and interaction not allowed",
                credential_type,
            )

        provider = self._providers[credential_type]
        generation = self._generation

        def operation() -> Awaitable[Credential]:
            if current is None:
                return self._settle(
                    credential_type,
                    generation,
                    current,
                    provider.acquire(user_interaction_allowed=interactive),
                    interactive=interactive,
                )
            if not provider.silent_refresh and not interactive:
                return self._settle(
                    credential_type,
                    generation,
                    current,
                    self._interaction_required(credential_type),
                    interactive=False,
                )
            return self._settle(
                credential_type,
                generation,
                current,
                provider.refresh(current),
                interactive=interactive or not provider.silent_refresh,
            )

        logger.debug(f"Starting {credential_type.value} refresh")
        entry = self._locks.start(credential_type, generation, operation)
        return await entry.wait()

    async def issue_server_auth_code(self) -> str | None:
        """Mint a server auth code for calendar delegation.

        Waits for the identity credential to be fresh first, since the code
        comes from a silent sign-in against the same account.
        """
        await self.ensure_fresh(CredentialType.IDENTITY)
        return await self._identity.obtain_server_auth_code()

    async def invalidate(self, credential_type: CredentialType, token: str | None = None) -> None:
        """Force a credential to stale regardless of its recorded expiry.

        Args:
            credential_type: Credential the server rejected
            token: The token that was rejected. If the credential has since
                been replaced, nothing happens.
        """
        current = self._session.get(credential_type)
        if current is None:
            return
        if token is not None and current.token != token:
            logger.debug(f"{credential_type.value} already replaced, not invalidating")
            return

        stale = current.expire_now(self._clock())
        if stale is current:
            return
        logger.info(f"{credential_type.value} credential invalidated by server rejection")
        await self._commit(stale, self._generation, clear_reauth=False)

    async def adopt_rotated_token(self, token: str) -> None:
        """Replace the identity token with one the backend rotated in a response header."""
        current = self._session.identity
        if current is None:
            logger.warning("Ignoring rotated identity token with no active session")
            return
        if not token or token == current.token:
            return

        now = self._clock()
        rotated = Credential(
            type=CredentialType.IDENTITY,
            token=token,
            issued_at=now,
            expires_at=self._identity.expiry_for(token, now),
            refresh_token=current.refresh_token,
        )
        logger.info("Adopting identity token rotated by the backend")
        await self._commit(rotated, self._generation)

    async def refresh_all(self) -> Session:
        """Bring the session up to date in one pass.

        Refreshes the identity credential if needed and drops an expired
        conferencing credential, which cannot be refreshed silently.
        """
        if self._session.identity is not None:
            await self.ensure_fresh(CredentialType.IDENTITY)

        conferencing = self._session.conferencing
        if conferencing is not None and seconds_remaining(conferencing, self._clock()) == 0:
            logger.info("Conferencing credential expired, removing it")
            await self._drop(CredentialType.CONFERENCING)

        return self._session

    # ================================
    # Internals
    # ================================

    async def _settle(
        self,
        credential_type: CredentialType,
        generation: int,
        current: Credential | None,
        operation: Awaitable[Credential],
        interactive: bool,
    ) -> Credential:
        """Await a provider operation and apply its outcome to the session."""
        try:
            credential = await self._bounded(operation, credential_type, interactive)
        except ReauthRequiredError as e:
            self._check_generation(generation, credential_type)
            await self._handle_reauth(credential_type, e)
            raise
        except DelegationUnavailableError as e:
            self._check_generation(generation, credential_type)
            logger.warning(f"Calendar sync disabled: {e}")
            await self._drop(credential_type, degraded=True)
            raise
        except MalformedResponseError as e:
            logger.error(f"{credential_type.value} provider response rejected: {e}")
            self._check_generation(generation, credential_type)
            raise
        except (UserCancelledError, NetworkError) as e:
            logger.info(f"{credential_type.value} refresh did not complete: {e}")
            self._check_generation(generation, credential_type)
            raise

        self._check_generation(generation, credential_type)
        credential = self._keep_refresh_token(current, credential)
        await self._commit(credential, generation)
        return credential

    async def _bounded(
        self,
        operation: Awaitable[Credential],
        credential_type: CredentialType,
        interactive: bool,
    ) -> Credential:
        # Calendar refreshes may include an identity refresh, hence two request budgets
        timeout = self.config.request_timeout * 2
        if interactive:
            timeout += self.config.interactive_timeout
        try:
            return await asyncio.wait_for(operation, timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"{credential_type.value} refresh timed out after {timeout:.0f}s",
                credential_type,
            ) from e

    async def _interaction_required(self, credential_type: CredentialType) -> Credential:
        raise ReauthRequiredError(
            f"{credential_type.value} credential needs interactive re-authorization",
            credential_type,
        )

    async def _handle_reauth(self, credential_type: CredentialType, error: ReauthRequiredError) -> None:
        if credential_type is CredentialType.IDENTITY:
            logger.error(f"Identity credential can no longer be refreshed, ending session: {error}")
            try:
                await self.logout()
            except StorageError as e:
                logger.error(f"Logout after identity failure was incomplete: {e}")
            return

        logger.warning(f"{credential_type.value} needs re-authorization, feature disabled: {error}")
        self._reauth_required.add(credential_type)
        await self._drop(credential_type, degraded=True)

    async def _commit(
        self, credential: Credential, generation: int, clear_reauth: bool = True
    ) -> None:
        credential_type = credential.type
        persisted = self._session.persisted
        try:
            await self._store.write_credential(credential)
        except StorageError as e:
            logger.warning(
                f"Failed to persist {credential_type.value} credential, continuing in memory: {e}"
            )
            persisted = False

        if generation != self._generation:
            # Logout ran while we were writing; make sure nothing survives it
            if self._session.get(credential_type) is None:
                await self._store.remove_credential(credential_type)
            self._check_generation(generation, credential_type)

        if clear_reauth:
            self._reauth_required.discard(credential_type)
        self._session = replace(
            self._session.with_credential(credential_type, credential),
            persisted=persisted,
            degraded=self._session.degraded - {credential_type},
        )
        remaining = seconds_remaining(credential, self._clock())
        logger.debug(
            f"{credential_type.value} credential stored, "
            f"{'unknown lifetime' if remaining is None else f'{remaining:.0f}s remaining'}"
        )
        await self._notify()

    async def _drop(self, credential_type: CredentialType, degraded: bool = False) -> None:
        session = self._session.with_credential(credential_type, None)
        if degraded:
            session = replace(session, degraded=session.degraded | {credential_type})
        self._session = session
        await self._store.remove_credential(credential_type)
        await self._notify()

    async def _settle_in_flight(self, credential_type: CredentialType) -> None:
        in_flight = self._locks.get(credential_type)
        if in_flight is None:
            return
        try:
            await in_flight.wait()
        except CredentialError as e:
            logger.debug(f"Earlier {credential_type.value} refresh failed: {e}")

    async def _await_lock_free(self, credential_type: CredentialType) -> None:
        # Another caller can start a refresh while we wait on the previous one
        while self._locks.is_held(credential_type):
            await self._settle_in_flight(credential_type)

    def _check_generation(self, generation: int, credential_type: CredentialType) -> None:
        if generation != self._generation:
            logger.info(f"Discarding {credential_type.value} result from an ended session")
            raise SessionEndedError(
                "Session ended while the credential was being refreshed", credential_type
            )

    @staticmethod
    def _keep_refresh_token(current: Credential | None, credential: Credential) -> Credential:
        # Repeat consent may omit the refresh token; the earlier one stays valid
        if (
            credential.refresh_token is None
            and current is not None
            and current.refresh_token
            and credential.type.supports_refresh_token
        ):
            return replace(credential, refresh_token=current.refresh_token)
        return credential

    async def _notify(self) -> None:
        snapshot = self._session
        for listener in list(self._listeners):
            try:
                await listener(snapshot)
            except Exception as e:
                logger.warning(f"Session listener failed: {e}")
