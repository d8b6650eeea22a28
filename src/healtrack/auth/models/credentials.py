"""Credential and session models for the clinic client.

Contains the three credential kinds the client carries, the immutable
credential record, and the read-only session snapshot handed to consumers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum


class CredentialType(str, Enum):
    """The three classes of bearer credential attached to outbound requests."""

    IDENTITY = "identity"
    CALENDAR_DELEGATION = "calendar"
    CONFERENCING = "conferencing"

    @property
    def supports_refresh_token(self) -> bool:
        """Only identity and calendar delegation ever carry a refresh token."""
        return self is not CredentialType.CONFERENCING


class CredentialState(str, Enum):
    """Lifecycle state of a single credential type."""

    ABSENT = "absent"
    ACQUIRING = "acquiring"
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"
    REAUTH_REQUIRED = "reauth_required"


@dataclass(frozen=True)
class Credential:
    """One bearer credential with its expiry metadata.

    Immutable so that adapters and consumers only ever hold copies. An
    ``expires_at`` of ``None`` means the lifetime is unknown and the credential
    is never considered fresh.
    """

    type: CredentialType
    token: str
    issued_at: float  # Unix timestamp
    expires_at: float | None = None  # Unix timestamp
    refresh_token: str | None = None

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("Credential token must be a non-empty string")
        if self.expires_at is not None and self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be strictly greater than issued_at")
        if self.refresh_token and not self.type.supports_refresh_token:
            raise ValueError(f"{self.type.value} credentials cannot carry a refresh token")

    def expire_now(self, now: float) -> Credential:
        """Return a copy the expiry policy will treat as stale at ``now``.

        Used when the server rejects a token the client still believed valid.
        """
        if self.expires_at is not None and self.expires_at <= now:
            return self
        # Keep the expires_at > issued_at invariant even for clock skew
        issued_at = min(self.issued_at, now - 1.0)
        return replace(self, issued_at=issued_at, expires_at=now)


@dataclass(frozen=True)
class Session:
    """Read-only snapshot of the signed-in doctor's credentials.

    ``is_logged_in`` follows the identity credential alone: a stale identity
    token still counts as logged in because it is refreshed transparently.
    """

    identity: Credential | None = None
    calendar: Credential | None = None
    conferencing: Credential | None = None
    is_admin: bool = False
    doctor_id: str | None = None
    generation: int = 0
    persisted: bool = True
    degraded: frozenset[CredentialType] = field(default_factory=frozenset)

    @property
    def is_logged_in(self) -> bool:
        return self.identity is not None

    @property
    def calendar_sync_available(self) -> bool:
        return (
            self.calendar is not None
            and CredentialType.CALENDAR_DELEGATION not in self.degraded
        )

    def get(self, credential_type: CredentialType) -> Credential | None:
        """Return the credential held for ``credential_type``, if any."""
        if credential_type is CredentialType.IDENTITY:
            return self.identity
        if credential_type is CredentialType.CALENDAR_DELEGATION:
            return self.calendar
        return self.conferencing

    def with_credential(
        self, credential_type: CredentialType, credential: Credential | None
    ) -> Session:
        """Return a copy with one credential slot replaced."""
        if credential_type is CredentialType.IDENTITY:
            return replace(self, identity=credential)
        if credential_type is CredentialType.CALENDAR_DELEGATION:
            return replace(self, calendar=credential)
        return replace(self, conferencing=credential)
