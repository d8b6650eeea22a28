import asyncio

import pytest

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.models.errors import DelegationUnavailableError, UserCancelledError
from healtrack.auth.session.manager import SessionManager
from healtrack.auth.storage.store import MemoryCredentialStore
from healtrack.config import ClientConfig

NOW = 1_700_000_000.0


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeProvider:
    """Scriptable provider adapter that counts calls."""

    def __init__(self, credential_type: CredentialType, clock: FakeClock, silent_refresh: bool = True):
        self.credential_type = credential_type
        self.silent_refresh = silent_refresh
        self.clock = clock
        self.acquire_calls = 0
        self.refresh_calls = 0
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.lifetime = 3600.0
        self.counter = 0
        self.auth_code_source = None
        self.exchange_codes: list[str | None] = []

    def _next(self, refresh_token: str | None = None) -> Credential:
        self.counter += 1
        return Credential(
            type=self.credential_type,
            token=f"{self.credential_type.value}-token-{self.counter}",
            issued_at=self.clock(),
            expires_at=self.clock() + self.lifetime,
            refresh_token=refresh_token,
        )

    async def _settle(self, refresh_token: str | None) -> Credential:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self._next(refresh_token)

    async def acquire(self, user_interaction_allowed: bool) -> Credential:
        self.acquire_calls += 1
        if not user_interaction_allowed and not self.silent_refresh:
            raise UserCancelledError("interaction required", self.credential_type)
        return await self._settle(None)

    async def refresh(self, existing: Credential) -> Credential:
        self.refresh_calls += 1
        return await self._settle(None)

    async def exchange(self, server_auth_code: str | None) -> Credential:
        self.exchange_codes.append(server_auth_code)
        if not server_auth_code:
            raise DelegationUnavailableError("no server auth code", self.credential_type)
        return await self._settle(None)

    async def close(self) -> None:
        return None


class FakeIdentityProvider(FakeProvider):
    """Identity fake that also mints server auth codes."""

    def __init__(self, clock: FakeClock):
        super().__init__(CredentialType.IDENTITY, clock)
        self.server_auth_code: str | None = "server-code"
        self.code_calls = 0
        self.signed_out = False

    async def sign_in(self, user_interaction_allowed: bool = True):
        credential = await self.acquire(user_interaction_allowed)
        return credential, self.server_auth_code

    async def obtain_server_auth_code(self) -> str | None:
        self.code_calls += 1
        return self.server_auth_code

    def expiry_for(self, token: str, now: float, expires_in: int | None = None) -> float | None:
        return now + expires_in if expires_in else None

    async def sign_out(self) -> None:
        self.signed_out = True


def make_credential(
    credential_type: CredentialType = CredentialType.IDENTITY,
    token: str = "token-abc",
    issued_at: float = NOW - 60,
    expires_at: float | None = NOW + 3600,
    refresh_token: str | None = "refresh-xyz",
) -> Credential:
    if not credential_type.supports_refresh_token:
        refresh_token = None
    return Credential(
        type=credential_type,
        token=token,
        issued_at=issued_at,
        expires_at=expires_at,
        refresh_token=refresh_token,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        api_base_url="https://api.example.com",
        request_timeout=5.0,
        interactive_timeout=5.0,
    )


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def credential_factory():
    return make_credential


@pytest.fixture
def fakes(clock):
    """Fake adapters for the three credential types."""
    identity = FakeIdentityProvider(clock)
    calendar = FakeProvider(CredentialType.CALENDAR_DELEGATION, clock)
    conferencing = FakeProvider(CredentialType.CONFERENCING, clock, silent_refresh=False)
    return identity, calendar, conferencing


@pytest.fixture
def session_manager(store, fakes, config, clock) -> SessionManager:
    identity, calendar, conferencing = fakes
    return SessionManager(store, identity, calendar, conferencing, config=config, clock=clock)

