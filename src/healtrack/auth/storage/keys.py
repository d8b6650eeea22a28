"""Persisted key layout for session state.

Key names are part of the on-device format and must not change between
releases, otherwise an upgraded client would silently lose its session.
"""

from __future__ import annotations

from dataclasses import dataclass

from healtrack.auth.models.credentials import CredentialType

PREFIX = "healtrack"


@dataclass(frozen=True)
class CredentialKeys:
    """Storage keys for the fields of one credential type."""

    token: str
    issued_at: str
    expires_at: str
    refresh_token: str | None = None

    def all(self) -> list[str]:
        keys = [self.token, self.issued_at, self.expires_at]
        if self.refresh_token:
            keys.append(self.refresh_token)
        return keys


def _keys_for(name: str, with_refresh: bool) -> CredentialKeys:
    return CredentialKeys(
        token=f"{PREFIX}.{name}.token",
        issued_at=f"{PREFIX}.{name}.issued_at",
        expires_at=f"{PREFIX}.{name}.expires_at",
        refresh_token=f"{PREFIX}.{name}.refresh_token" if with_refresh else None,
    )


CREDENTIAL_KEYS: dict[CredentialType, CredentialKeys] = {
    CredentialType.IDENTITY: _keys_for("identity", with_refresh=True),
    CredentialType.CALENDAR_DELEGATION: _keys_for("calendar", with_refresh=True),
    CredentialType.CONFERENCING: _keys_for("conferencing", with_refresh=False),
}

ADMIN_FLAG = f"{PREFIX}.session.is_admin"
DOCTOR_ID = f"{PREFIX}.session.doctor_id"


def session_keys() -> list[str]:
    """Every key that belongs to session state, cleared together on logout."""
    keys: list[str] = []
    for credential_keys in CREDENTIAL_KEYS.values():
        keys.extend(credential_keys.all())
    keys.extend([ADMIN_FLAG, DOCTOR_ID])
    return keys
