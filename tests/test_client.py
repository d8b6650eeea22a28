from unittest.mock import AsyncMock

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.storage.store import MemoryCredentialStore
from healtrack.client import HealtrackClient
from healtrack.config import ClientConfig

NOW = 1_700_000_000.0


class TestHealtrackClient:
    def setup_method(self):
        self.config = ClientConfig(api_base_url="https://api.example.com")
        self.store = MemoryCredentialStore()
        self.client = HealtrackClient(
            self.config, AsyncMock(), AsyncMock(), store=self.store
        )

    async def test_start_restores_stored_session(self):
        # Arrange
        await self.store.write_credential(
            Credential(
                type=CredentialType.IDENTITY,
                token="stored-token",
                issued_at=NOW,
                expires_at=NOW + 3600,
                refresh_token="refresh",
            )
        )

        # Act
        session = await self.client.start()

        # Assert
        assert session.is_logged_in is True
        assert self.client.session.identity.token == "stored-token"
        await self.client.close()

    async def test_start_is_idempotent(self):
        await self.client.start()
        await self.store.write("healtrack.identity.token", "late-token")

        session = await self.client.start()

        assert session.is_logged_in is False
        await self.client.close()

    async def test_calendar_codes_come_from_session_manager(self):
        assert self.client.calendar.auth_code_source == self.client.sessions.issue_server_auth_code
        await self.client.close()

    async def test_context_manager(self):
        async with HealtrackClient(
            self.config, AsyncMock(), AsyncMock(), store=self.store
        ) as client:
            assert client.session.is_logged_in is False

        assert client.api._http_client.is_closed
