"""Interactive authorization flow models.

Contains the identity consent request and the conferencing redirect request
and callback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlencode, urlparse


@dataclass(frozen=True)
class ConsentRequest:
    """Parameters for the identity provider's consent screen."""

    client_id: str
    scopes: tuple[str, ...]
    offline_access: bool = True
    # Some providers drop the refresh token on repeat consent unless forced
    force_refresh_token: bool = True
    interactive: bool = True


@dataclass(frozen=True)
class ConferencingAuthorizationRequest:
    """Redirect-based token request to the conferencing provider."""

    authorization_endpoint: str
    client_id: str
    callback_url: str
    response_type: str = "Token"

    def build_authorization_url(self) -> str:
        params = {
            "responseType": self.response_type,
            "clientId": self.client_id,
            "callbackUrl": self.callback_url,
        }
        return f"{self.authorization_endpoint}?{urlencode(params)}"


@dataclass(frozen=True)
class ConferencingCallback:
    """Parameters carried back on the conferencing callback URL."""

    access_token: str | None = None
    expires_in: str | None = None
    error: str | None = None
    error_description: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_url(cls, callback_url: str) -> ConferencingCallback:
        """Parse a callback URL. Both query string and fragment are searched."""
        parsed = urlparse(callback_url)
        params: dict[str, list[str]] = {}
        for part in (parsed.fragment, parsed.query):
            for key, values in parse_qs(part).items():
                params.setdefault(key, values)

        def get_single_param(key: str) -> str | None:
            values = params.pop(key, [])
            return values[0] if values else None

        return cls(
            access_token=get_single_param("access_token"),
            expires_in=get_single_param("expires_in"),
            error=get_single_param("error"),
            error_description=get_single_param("error_description"),
            extra={k: v[0] for k, v in params.items() if v},
        )

    def is_success(self) -> bool:
        return self.error is None and bool(self.access_token)

    def is_error(self) -> bool:
        return self.error is not None
