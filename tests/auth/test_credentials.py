import pytest

from healtrack.auth.models.credentials import Credential, CredentialType, Session
from healtrack.auth.primitives.expiry import is_fresh

NOW = 1_700_000_000.0


class TestCredentialInvariants:
    def test_expiry_must_follow_issue_time(self):
        with pytest.raises(ValueError):
            Credential(
                type=CredentialType.IDENTITY, token="t", issued_at=NOW, expires_at=NOW
            )

    def test_empty_token_rejected(self):
        with pytest.raises(ValueError):
            Credential(type=CredentialType.IDENTITY, token="", issued_at=NOW)

    def test_conferencing_cannot_carry_refresh_token(self):
        with pytest.raises(ValueError):
            Credential(
                type=CredentialType.CONFERENCING,
                token="t",
                issued_at=NOW,
                refresh_token="r",
            )

    def test_null_expiry_allowed(self):
        credential = Credential(type=CredentialType.IDENTITY, token="t", issued_at=NOW)
        assert credential.expires_at is None


class TestExpireNow:
    def test_forces_stale_before_recorded_expiry(self):
        # Arrange
        credential = Credential(
            type=CredentialType.IDENTITY,
            token="t",
            issued_at=NOW - 10,
            expires_at=NOW + 3600,
            refresh_token="r",
        )

        # Act
        stale = credential.expire_now(NOW)

        # Assert
        assert not is_fresh(stale, NOW, 0)
        assert stale.token == "t"
        assert stale.refresh_token == "r"
        assert stale.expires_at > stale.issued_at

    def test_issued_in_future_keeps_invariant(self):
        """Clock skew: a credential issued 'after' now still expires after issue."""
        credential = Credential(
            type=CredentialType.IDENTITY, token="t", issued_at=NOW + 100, expires_at=NOW + 3600
        )

        stale = credential.expire_now(NOW)

        assert stale.expires_at == NOW
        assert stale.issued_at < stale.expires_at

    def test_already_expired_is_unchanged(self):
        credential = Credential(
            type=CredentialType.IDENTITY, token="t", issued_at=NOW - 100, expires_at=NOW - 50
        )
        assert credential.expire_now(NOW) is credential


class TestSession:
    def test_logged_in_follows_identity_even_when_stale(self):
        stale_identity = Credential(
            type=CredentialType.IDENTITY, token="t", issued_at=NOW - 100, expires_at=NOW - 50
        )

        assert Session().is_logged_in is False
        assert Session(identity=stale_identity).is_logged_in is True

    def test_with_credential_replaces_one_slot(self):
        calendar = Credential(
            type=CredentialType.CALENDAR_DELEGATION, token="c", issued_at=NOW
        )

        session = Session().with_credential(CredentialType.CALENDAR_DELEGATION, calendar)

        assert session.get(CredentialType.CALENDAR_DELEGATION) is calendar
        assert session.get(CredentialType.IDENTITY) is None
        assert session.calendar_sync_available is True
