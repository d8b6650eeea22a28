"""Exception hierarchy for credential and session errors.

Provides specific exception types for each failure mode so callers can
decide between retrying, degrading a feature, or ending the session.
"""

from __future__ import annotations

from healtrack.auth.models.credentials import CredentialType


class CredentialError(Exception):
    """Base exception for all credential lifecycle errors."""

    def __init__(self, message: str, credential_type: CredentialType | None = None):
        super().__init__(message)
        self.credential_type = credential_type


class UserCancelledError(CredentialError):
    """Raised when the user abandons an interactive authorization flow.

    Non-fatal: the previous credential state is kept as it was.
    """

    pass


class NetworkError(CredentialError):
    """Raised when a provider call fails in transit. Retryable."""

    pass


class MalformedResponseError(NetworkError):
    """Raised when a provider answers with a payload we cannot parse.

    Fatal to the attempt but retried like any other network error.
    """

    pass


class NetworkUnavailableError(NetworkError):
    """Raised by the request pipeline on timeouts and lost connectivity.

    Never touches credential state and never ends the session.
    """

    pass


class ReauthRequiredError(CredentialError):
    """Raised when a credential can no longer be refreshed silently.

    Terminal for the affected credential. For the identity credential it ends
    the whole session.
    """

    pass


class ConsentRevokedError(ReauthRequiredError):
    """Raised when the provider reports that the user revoked consent."""

    pass


class DelegationUnavailableError(CredentialError):
    """Raised when the calendar exchange succeeds without returning a token.

    The session stays signed in with calendar sync disabled.
    """

    pass


class StorageError(CredentialError):
    """Raised when the credential store rejects a write or removal."""

    def __init__(self, message: str, failed_keys: list[str] | None = None):
        super().__init__(message)
        self.failed_keys = failed_keys or []


class UnauthenticatedError(CredentialError):
    """Raised when a request cannot be authenticated and the user must sign in."""

    pass


class SessionEndedError(UnauthenticatedError):
    """Raised to callers of a refresh whose session was logged out mid-flight."""

    pass
