"""Provider token payloads.

Pydantic models for what each provider hands back: the identity consent
grant, the backend refresh proxy response, and the calendar exchange response.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from healtrack.auth.primitives.expiry import MAX_REPORTED_LIFETIME


class IdentityGrant(BaseModel):
    """Result of an identity consent or silent sign-in.

    ``server_auth_code`` is a one-time code the backend trades for a
    calendar delegation token. ``refresh_token`` is only present when the
    provider was forced to issue one.
    """

    model_config = ConfigDict(populate_by_name=True)

    id_token: str | None = Field(default=None, alias="idToken")
    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    server_auth_code: str | None = Field(default=None, alias="serverAuthCode")
    expires_in: int | None = Field(
        default=None, alias="expiresIn", gt=0, le=MAX_REPORTED_LIFETIME
    )

    @property
    def bearer_token(self) -> str | None:
        """The token the backend accepts in the Authorization header."""
        return self.id_token or self.access_token


class IdentityRefreshResponse(BaseModel):
    """Backend ``/refresh-token`` proxy response.

    Carries either new tokens or an OAuth style error.
    """

    model_config = ConfigDict(populate_by_name=True)

    id_token: str | None = Field(default=None, alias="idToken")
    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    expires_in: int | None = Field(
        default=None, alias="expiresIn", gt=0, le=MAX_REPORTED_LIFETIME
    )

    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.bearer_token is not None

    def is_error(self) -> bool:
        return self.error is not None

    @property
    def bearer_token(self) -> str | None:
        return self.id_token or self.access_token


class ExchangeRequest(BaseModel):
    """Body for the backend ``/exchange`` endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    server_auth_code: str = Field(alias="serverAuthCode", min_length=1)


class ExchangeResponse(BaseModel):
    """Backend ``/exchange`` response.

    Depending on the call site the backend returns an access token, a refresh
    token, or both.
    """

    model_config = ConfigDict(populate_by_name=True)

    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    error: str | None = None

    def has_token(self) -> bool:
        return bool(self.access_token)
