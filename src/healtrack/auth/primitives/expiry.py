"""Expiry policy shared by every credential provider.

Pure decision functions: no I/O, no clock reads. Callers pass ``now`` in so
the same rules apply to self-reported, assumed, and redirect-parsed lifetimes.
"""

from __future__ import annotations

from healtrack.auth.models.credentials import Credential, CredentialState

IDENTITY_SAFETY_MARGIN = 300.0  # 5 minutes
CALENDAR_SAFETY_MARGIN = 300.0
CONFERENCING_SAFETY_MARGIN = 0.0

# Longest lifetime a provider may report for a token it issues
MAX_REPORTED_LIFETIME = 366 * 24 * 60 * 60


def is_fresh(credential: Credential, now: float, safety_margin: float) -> bool:
    """Check whether a credential can be used as-is.

    A credential with unknown expiry is never fresh, which forces a re-check
    on every use.

    Args:
        credential: Credential to inspect
        now: Current Unix timestamp
        safety_margin: Seconds before expiry at which the credential turns stale

    Returns:
        True iff expires_at is known and now < expires_at - safety_margin
    """
    if credential.expires_at is None:
        return False
    return now < credential.expires_at - safety_margin


def needs_refresh(
    credential: Credential | None, now: float, safety_margin: float
) -> bool:
    """Check whether a credential must be refreshed or acquired before use."""
    if credential is None:
        return True
    return not is_fresh(credential, now, safety_margin)


def classify(
    credential: Credential | None, now: float, safety_margin: float
) -> CredentialState:
    """Map a stored credential onto the resting lifecycle states."""
    if credential is None:
        return CredentialState.ABSENT
    if is_fresh(credential, now, safety_margin):
        return CredentialState.FRESH
    return CredentialState.STALE


def seconds_remaining(credential: Credential, now: float) -> float | None:
    """Seconds until hard expiry, floored at zero. None if unknown."""
    if credential.expires_at is None:
        return None
    return max(0.0, credential.expires_at - now)
