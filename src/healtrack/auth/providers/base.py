"""Provider adapter protocols.

Every provider exposes the same two operations to the session manager.
Interactive steps (consent screens, browser redirects) are delegated to
handler objects supplied by the host application.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.models.errors import MalformedResponseError, NetworkError
from healtrack.auth.models.flow import ConsentRequest
from healtrack.auth.models.tokens import IdentityGrant

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    """Capability interface shared by the identity, calendar and conferencing adapters.

    Adapters return new Credential objects and never keep references to them.
    They raise only CredentialError subclasses.
    """

    credential_type: CredentialType
    silent_refresh: bool

    async def acquire(self, user_interaction_allowed: bool) -> Credential:
        """Obtain a credential from scratch."""
        ...

    async def refresh(self, existing: Credential) -> Credential:
        """Obtain a replacement for an existing credential."""
        ...

    async def close(self) -> None: ...


class ConsentHandler(Protocol):
    """Protocol for the identity provider's consent screen.

    Implemented by the platform sign-in SDK bridge. Returning None means the
    user dismissed the screen, or, for a non-interactive request, that no
    silent sign-in was possible.
    """

    async def request_consent(self, request: ConsentRequest) -> IdentityGrant | None: ...

    async def sign_out(self) -> None: ...


class BrowserAuthHandler(Protocol):
    """Protocol for redirect-based authorization in an external browser.

    Returns the intercepted callback URL, or None if the user closed the
    browser before completing the flow.
    """

    async def open_auth_session(self, auth_url: str, callback_url: str) -> str | None: ...


def parse_json_body(response: httpx.Response, credential_type: CredentialType) -> dict:
    """Decode a JSON object body or raise MalformedResponseError."""
    try:
        body = response.json()
    except ValueError as e:
        raise MalformedResponseError(
            f"{credential_type.value} provider returned a non-JSON body "
            f"(status {response.status_code})",
            credential_type,
        ) from e
    if not isinstance(body, dict):
        raise MalformedResponseError(
            f"{credential_type.value} provider returned a non-object body",
            credential_type,
        )
    return body


def transport_error(
    e: httpx.HTTPError, credential_type: CredentialType, action: str
) -> NetworkError:
    """Translate an httpx failure into a retryable NetworkError."""
    if isinstance(e, httpx.TimeoutException):
        message = f"Timed out during {action}"
    else:
        message = f"HTTP error during {action}: {e}"
    logger.warning(f"{credential_type.value}: {message}")
    return NetworkError(message, credential_type)
