"""Identity provider adapter.

Acquires the primary identity credential through the platform consent
screen and refreshes it through the backend's refresh-token proxy, which
holds the OAuth client secret on the server side.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
import time
from typing import Callable

import httpx
from pydantic import ValidationError

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.models.errors import (
    ConsentRevokedError,
    CredentialError,
    MalformedResponseError,
    NetworkError,
    ReauthRequiredError,
    UserCancelledError,
)
from healtrack.auth.models.flow import ConsentRequest
from healtrack.auth.models.tokens import IdentityGrant, IdentityRefreshResponse
from healtrack.auth.providers.base import ConsentHandler, parse_json_body, transport_error
from healtrack.config import ClientConfig

logger = logging.getLogger(__name__)

# Provider error codes meaning the refresh token itself is dead
REAUTH_ERRORS = {"invalid_grant", "invalid_token", "unauthorized_client"}
REVOKED_ERRORS = {"access_denied", "consent_revoked", "revoked"}


def token_expiry_claim(token: str) -> float | None:
    """Read the ``exp`` claim from a JWT without verifying it.

    Only used to learn the lifetime the provider stamped on the token. Returns
    None for opaque tokens.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except ValueError:
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return None
    try:
        exp = float(exp)
    except OverflowError:
        return None
    return exp if math.isfinite(exp) else None


class IdentityProvider:
    """Manages the identity credential lifecycle.

    Handles:
    - Interactive consent with a forced refresh-token grant
    - Silent sign-in to mint fresh one-time server auth codes
    - Refresh-token exchange through the backend proxy
    """

    credential_type = CredentialType.IDENTITY
    silent_refresh = True

    def __init__(
        self,
        config: ClientConfig,
        consent_handler: ConsentHandler,
        clock: Callable[[], float] = time.time,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the identity provider.

        Args:
            config: Client configuration
            consent_handler: Bridge to the platform consent screen
            clock: Source of the current Unix time
            http_client: Optional shared HTTP client
        """
        self.config = config
        self.consent_handler = consent_handler
        self._clock = clock
        self._http_client = http_client or httpx.AsyncClient(timeout=config.request_timeout)

    def consent_request(self, interactive: bool) -> ConsentRequest:
        return ConsentRequest(
            client_id=self.config.identity_client_id,
            scopes=tuple(self.config.identity_scopes),
            offline_access=True,
            force_refresh_token=self.config.force_refresh_token,
            interactive=interactive,
        )

    async def sign_in(self, user_interaction_allowed: bool = True) -> tuple[Credential, str | None]:
        """Run the consent flow and return the credential and server auth code.

        Raises:
            UserCancelledError: If the user dismissed the consent screen
            ReauthRequiredError: If no interaction is allowed and silent sign-in failed
            MalformedResponseError: If the grant carries no usable token
        """
        grant = await self._request_grant(user_interaction_allowed)
        credential = self._credential_from_grant(grant)

        if credential.refresh_token is None:
            logger.warning(
                "Identity grant carried no refresh token; silent refresh will be unavailable"
            )

        logger.info("Identity credential acquired")
        return credential, grant.server_auth_code

    async def acquire(self, user_interaction_allowed: bool) -> Credential:
        credential, _ = await self.sign_in(user_interaction_allowed)
        return credential

    async def obtain_server_auth_code(self) -> str | None:
        """Mint a new one-time server auth code through silent sign-in.

        Returns:
            The server auth code, or None if the provider issued none

        Raises:
            ReauthRequiredError: If silent sign-in is no longer possible
        """
        grant = await self._request_grant(user_interaction_allowed=False)
        if not grant.server_auth_code:
            logger.warning("Silent sign-in returned no server auth code")
        return grant.server_auth_code

    async def refresh(self, existing: Credential) -> Credential:
        """Exchange the stored refresh token for a new identity token.

        Args:
            existing: Current identity credential (copy)

        Returns:
            New identity credential, keeping the old refresh token when the
            provider does not rotate it

        Raises:
            ReauthRequiredError: If the refresh token is missing or rejected
            ConsentRevokedError: If the user revoked access
            NetworkError: On transport failures and server errors
            MalformedResponseError: If the response cannot be parsed
        """
        if not existing.refresh_token:
            raise ReauthRequiredError(
                "Identity credential has no refresh token", self.credential_type
            )

        url = self.config.identity_refresh_url
        logger.debug(f"Refreshing identity credential at {url}")

        try:
            response = await self._http_client.post(
                url,
                json={"refreshToken": existing.refresh_token},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise transport_error(e, self.credential_type, "identity refresh") from e

        token_response = self._parse_refresh_response(response)
        now = self._clock()
        credential = Credential(
            type=self.credential_type,
            token=token_response.bearer_token,
            issued_at=now,
            expires_at=self.expiry_for(token_response.bearer_token, now, token_response.expires_in),
            refresh_token=token_response.refresh_token or existing.refresh_token,
        )
        logger.info("Identity credential refreshed")
        return credential

    def expiry_for(self, token: str, now: float, expires_in: int | None = None) -> float | None:
        """Work out when an identity token expires.

        Prefers the provider's ``expires_in``, then the token's own ``exp``
        claim, then the configured assumed lifetime. Unknown otherwise.
        """
        if expires_in:
            return now + expires_in
        exp = token_expiry_claim(token)
        if exp is not None and exp > now:
            return exp
        if self.config.identity_assumed_lifetime:
            return now + self.config.identity_assumed_lifetime
        return None

    async def sign_out(self) -> None:
        """Sign out of the platform identity SDK. Failures are logged only."""
        try:
            await self.consent_handler.sign_out()
        except Exception as e:
            logger.warning(f"Identity provider sign-out failed: {e}")

    async def _request_grant(self, user_interaction_allowed: bool) -> IdentityGrant:
        request = self.consent_request(interactive=user_interaction_allowed)
        timeout = self.config.interactive_timeout if user_interaction_allowed else self.config.request_timeout

        try:
            grant = await asyncio.wait_for(self.consent_handler.request_consent(request), timeout)
        except asyncio.TimeoutError as e:
            if user_interaction_allowed:
                raise UserCancelledError(
                    "Identity consent window elapsed", self.credential_type
                ) from e
            raise NetworkError("Silent identity sign-in timed out", self.credential_type) from e
        except CredentialError:
            raise
        except Exception as e:
            raise NetworkError(
                f"Identity consent failed: {e}", self.credential_type
            ) from e

        if grant is None:
            if user_interaction_allowed:
                raise UserCancelledError("User cancelled identity consent", self.credential_type)
            raise ReauthRequiredError(
                "Silent identity sign-in unavailable", self.credential_type
            )
        return grant

    def _credential_from_grant(self, grant: IdentityGrant) -> Credential:
        token = grant.bearer_token
        if not token:
            raise MalformedResponseError(
                "Identity grant contained no token", self.credential_type
            )
        now = self._clock()
        return Credential(
            type=self.credential_type,
            token=token,
            issued_at=now,
            expires_at=self.expiry_for(token, now, grant.expires_in),
            refresh_token=grant.refresh_token,
        )

    def _parse_refresh_response(self, response: httpx.Response) -> IdentityRefreshResponse:
        if response.status_code >= 500:
            raise NetworkError(
                f"Identity refresh failed with server error {response.status_code}",
                self.credential_type,
            )

        body = parse_json_body(response, self.credential_type)
        try:
            token_response = IdentityRefreshResponse(**body)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Invalid identity refresh response: {e}", self.credential_type
            ) from e

        if response.status_code == 200 and token_response.is_success():
            return token_response

        error = token_response.error or ""
        logger.warning(
            f"Identity refresh rejected with {response.status_code}: "
            f"{error or 'no error code'} - {token_response.error_description or ''}"
        )
        if error in REVOKED_ERRORS:
            raise ConsentRevokedError(
                f"Identity consent revoked: {error}", self.credential_type
            )
        if error in REAUTH_ERRORS or response.status_code in (400, 401, 403):
            raise ReauthRequiredError(
                f"Identity refresh token rejected: {error or response.status_code}",
                self.credential_type,
            )
        if response.status_code == 200:
            raise MalformedResponseError(
                "Identity refresh response missing token", self.credential_type
            )
        raise NetworkError(
            f"Identity refresh failed with status {response.status_code}",
            self.credential_type,
        )

    async def close(self) -> None:
        await self._http_client.aclose()
