"""Tests for the request authentication pipeline.

Covers:
- Header attachment for each credential type
- One refresh-and-retry after a 401, logout after the second
- Transport failures surfacing as NetworkUnavailableError with the session kept
- Rotated identity tokens adopted from response headers
"""

import httpx
import pytest

from healtrack.auth.models.credentials import CredentialType
from healtrack.auth.models.errors import (
    NetworkError,
    NetworkUnavailableError,
    ReauthRequiredError,
    UnauthenticatedError,
)
from healtrack.http.auth import (
    ANONYMOUS,
    CONFERENCING,
    AttemptPhase,
    AuthAttempt,
    SessionAuth,
)
from healtrack.http.client import ApiClient

NOW = 1_700_000_000.0


class RecordingHandler:
    """MockTransport handler that replays queued status codes."""

    def __init__(self, *statuses: int, headers: dict | None = None):
        self.statuses = list(statuses) or [200]
        self.headers = headers or {}
        self.requests: list[httpx.Request] = []
        # The auth flow mutates one request object across retries
        self.headers_seen: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.headers_seen.append(request.headers.copy())
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status == 200}, headers=self.headers)


@pytest.fixture
async def make_api(config, session_manager):
    clients = []

    def factory(handler, connectivity_check=None):
        api = ApiClient(
            config,
            session_manager,
            connectivity_check=connectivity_check,
            transport=httpx.MockTransport(handler),
        )
        clients.append(api)
        return api

    yield factory
    for api in clients:
        await api.close()


async def signed_in(session_manager, credential_factory, **overrides):
    await session_manager.set_session(identity=credential_factory(**overrides))


class TestHeaderAttachment:
    async def test_attaches_identity_and_calendar(self, make_api, session_manager, credential_factory):
        # Arrange
        await session_manager.set_session(
            identity=credential_factory(),
            calendar=credential_factory(
                CredentialType.CALENDAR_DELEGATION, token="cal-token", expires_at=NOW + 3300
            ),
        )
        handler = RecordingHandler(200)
        api = make_api(handler)

        # Act
        response = await api.get("/patients")

        # Assert
        assert response.status_code == 200
        request = handler.requests[0]
        assert request.url == "https://api.example.com/patients"
        assert request.headers["Authorization"] == "Bearer token-abc"
        assert request.headers["auth"] == "Bearer cal-token"
        assert "x-liveswitch-token" not in request.headers

    async def test_attaches_fresh_conferencing_opportunistically(
        self, make_api, session_manager, credential_factory
    ):
        await session_manager.set_session(
            identity=credential_factory(),
            conferencing=credential_factory(CredentialType.CONFERENCING, token="conf-token"),
        )
        handler = RecordingHandler(200)

        await make_api(handler).get("/sessions")

        assert handler.requests[0].headers["x-liveswitch-token"] == "conf-token"

    async def test_stale_conferencing_is_not_attached_or_refreshed(
        self, make_api, session_manager, fakes, credential_factory
    ):
        _, _, conferencing_provider = fakes
        await session_manager.set_session(
            identity=credential_factory(),
            conferencing=credential_factory(
                CredentialType.CONFERENCING, token="conf", issued_at=NOW - 100, expires_at=NOW - 1
            ),
        )
        handler = RecordingHandler(200)

        await make_api(handler).get("/sessions")

        assert "x-liveswitch-token" not in handler.requests[0].headers
        assert conferencing_provider.acquire_calls == 0

    async def test_conferencing_endpoint_acquires_token(
        self, make_api, session_manager, fakes, credential_factory
    ):
        _, _, conferencing_provider = fakes
        await signed_in(session_manager, credential_factory)
        handler = RecordingHandler(200)

        await make_api(handler).post("/video-sessions", json={}, policy=CONFERENCING)

        assert conferencing_provider.acquire_calls == 1
        assert handler.requests[0].headers["x-liveswitch-token"] == "conferencing-token-1"

    async def test_failed_calendar_refresh_sends_without_calendar(
        self, make_api, session_manager, fakes, credential_factory
    ):
        # Arrange
        _, calendar_provider, _ = fakes
        calendar_provider.error = NetworkError("exchange down", CredentialType.CALENDAR_DELEGATION)
        await session_manager.set_session(
            identity=credential_factory(),
            calendar=credential_factory(CredentialType.CALENDAR_DELEGATION, expires_at=NOW + 10),
        )
        handler = RecordingHandler(200)

        # Act
        response = await make_api(handler).get("/appointments")

        # Assert
        assert response.status_code == 200
        assert "auth" not in handler.requests[0].headers
        assert session_manager.get_session().is_logged_in is True

    async def test_anonymous_request_skips_credentials(self, make_api):
        handler = RecordingHandler(200)

        await make_api(handler).get("/health", policy=ANONYMOUS)

        assert "Authorization" not in handler.requests[0].headers


class TestUnauthorizedRetry:
    async def test_single_401_is_retried_after_refresh(
        self, make_api, session_manager, fakes, credential_factory
    ):
        """The caller only ever sees the successful response."""
        # Arrange
        identity_provider, _, _ = fakes
        await signed_in(session_manager, credential_factory)
        handler = RecordingHandler(401, 200)

        # Act
        response = await make_api(handler).get("/patients")

        # Assert
        assert response.status_code == 200
        assert identity_provider.refresh_calls == 1
        assert [h["Authorization"] for h in handler.headers_seen] == [
            "Bearer token-abc",
            "Bearer identity-token-1",
        ]
        assert session_manager.get_session().identity.token == "identity-token-1"

    async def test_second_401_ends_the_session(
        self, make_api, session_manager, store, fakes, credential_factory
    ):
        # Arrange
        identity_provider, _, _ = fakes
        await signed_in(session_manager, credential_factory)
        handler = RecordingHandler(401, 401, 401)

        # Act
        with pytest.raises(UnauthenticatedError):
            await make_api(handler).get("/patients")

        # Assert
        assert len(handler.requests) == 2
        assert identity_provider.refresh_calls == 1
        assert session_manager.get_session().is_logged_in is False
        assert store.snapshot() == {}

    async def test_refresh_rejected_after_401_ends_session(
        self, make_api, session_manager, fakes, credential_factory
    ):
        identity_provider, _, _ = fakes
        identity_provider.error = ReauthRequiredError("invalid_grant", CredentialType.IDENTITY)
        await signed_in(session_manager, credential_factory)
        handler = RecordingHandler(401, 200)

        with pytest.raises(UnauthenticatedError):
            await make_api(handler).get("/patients")

        assert len(handler.requests) == 1
        assert session_manager.get_session().is_logged_in is False

    async def test_signed_out_request_is_never_dispatched(self, make_api, session_manager):
        handler = RecordingHandler(200)

        with pytest.raises(UnauthenticatedError):
            await make_api(handler).get("/patients")

        assert handler.requests == []
        assert session_manager.get_session().is_logged_in is False


class TestNetworkFailures:
    async def test_identity_refresh_network_failure_keeps_session(
        self, make_api, session_manager, fakes, credential_factory
    ):
        identity_provider, _, _ = fakes
        identity_provider.error = NetworkError("offline", CredentialType.IDENTITY)
        await signed_in(session_manager, credential_factory, expires_at=NOW + 1)
        handler = RecordingHandler(200)

        with pytest.raises(NetworkUnavailableError):
            await make_api(handler).get("/patients")

        assert handler.requests == []
        assert session_manager.get_session().is_logged_in is True

    async def test_transport_error_keeps_session(self, make_api, session_manager, credential_factory):
        await signed_in(session_manager, credential_factory)

        def offline(request):
            raise httpx.ConnectError("network unreachable", request=request)

        with pytest.raises(NetworkUnavailableError):
            await make_api(offline).get("/patients")

        assert session_manager.get_session().identity.token == "token-abc"

    async def test_timeout_keeps_session(self, make_api, session_manager, credential_factory):
        await signed_in(session_manager, credential_factory)

        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(NetworkUnavailableError, match="timed out"):
            await make_api(slow).get("/patients")

        assert session_manager.get_session().is_logged_in is True

    async def test_connectivity_check_blocks_dispatch(
        self, make_api, session_manager, credential_factory
    ):
        await signed_in(session_manager, credential_factory)
        handler = RecordingHandler(200)

        async def offline():
            return False

        with pytest.raises(NetworkUnavailableError):
            await make_api(handler, connectivity_check=offline).get("/patients")

        assert handler.requests == []


class TestRotatedToken:
    async def test_rotated_token_header_is_adopted(
        self, make_api, session_manager, credential_factory
    ):
        await signed_in(session_manager, credential_factory)
        handler = RecordingHandler(200, headers={"newAccessToken": "rotated-token"})

        await make_api(handler).get("/patients")

        identity = session_manager.get_session().identity
        assert identity.token == "rotated-token"
        assert identity.refresh_token == "refresh-xyz"


class TestAuthAttempt:
    def test_allows_exactly_one_retry(self):
        attempt = AuthAttempt()

        assert attempt.record_unauthorized() is True
        assert attempt.phase is AttemptPhase.RETRY
        assert attempt.record_unauthorized() is False
        assert attempt.phase is AttemptPhase.EXHAUSTED

    def test_sync_clients_are_rejected(self, session_manager, config):
        auth = SessionAuth(session_manager, config)
        flow = auth.sync_auth_flow(httpx.Request("GET", "https://api.example.com/"))

        with pytest.raises(RuntimeError):
            next(flow)
