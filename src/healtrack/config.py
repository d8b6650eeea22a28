"""Client configuration for the HealTrack session layer.

Values default to the production backend and providers. Deployments override
them through ``HEALTRACK_*`` environment variables or a ``.env`` file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from healtrack.auth.primitives.expiry import (
    CALENDAR_SAFETY_MARGIN,
    CONFERENCING_SAFETY_MARGIN,
    IDENTITY_SAFETY_MARGIN,
)

DEFAULT_IDENTITY_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

ENV_PREFIX = "HEALTRACK_"


class ClientConfig(BaseModel):
    """Immutable configuration shared by the adapters, session and HTTP layers."""

    model_config = ConfigDict(frozen=True)

    # Backend
    api_base_url: str = "https://healtrackapp-production-b2ab.up.railway.app"
    exchange_path: str = "/exchange"
    identity_refresh_path: str = "/refresh-token"
    request_timeout: float = Field(default=60.0, gt=0)

    # Identity provider
    identity_client_id: str = (
        "1038698506388-eegihlhipbg4d1cubdjk4p44gv74sv5i.apps.googleusercontent.com"
    )
    identity_scopes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IDENTITY_SCOPES), min_length=1
    )
    force_refresh_token: bool = True
    identity_margin: float = Field(default=IDENTITY_SAFETY_MARGIN, ge=0)
    identity_assumed_lifetime: float | None = Field(default=None, gt=0)

    # Calendar delegation
    calendar_lifetime: float = Field(default=3300.0, gt=0)  # 55 minutes
    calendar_margin: float = Field(default=CALENDAR_SAFETY_MARGIN, ge=0)
    calendar_header: str = "auth"

    # Conferencing provider
    conferencing_auth_url: str = "https://public-api.production.liveswitch.com/v1/tokens"
    conferencing_client_id: str = "ADRTBpRcrev3ebDN2Jdpd2ednNlFbw7B"
    conferencing_callback_url: str = "physio.gem.auth://callback"
    conferencing_margin: float = Field(default=CONFERENCING_SAFETY_MARGIN, ge=0)
    conferencing_header: str = "x-liveswitch-token"
    interactive_timeout: float = Field(default=300.0, gt=0)

    # Storage
    storage_path: Path = Path.home() / ".healtrack" / "session.json"

    @field_validator("api_base_url", "conferencing_auth_url")
    @classmethod
    def validate_https_url(cls, v: str) -> str:
        """Backend and provider endpoints must use HTTPS (or localhost for dev)."""
        if not (v.startswith("https://") or v.startswith("http://localhost")):
            raise ValueError(f"URL must use HTTPS: {v}")
        return v.rstrip("/")

    @field_validator("exchange_path", "identity_refresh_path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Path must start with '/': {v}")
        return v

    def url_for(self, path: str) -> str:
        """Build an absolute backend URL for ``path``."""
        return f"{self.api_base_url}{path}"

    @property
    def exchange_url(self) -> str:
        return self.url_for(self.exchange_path)

    @property
    def identity_refresh_url(self) -> str:
        return self.url_for(self.identity_refresh_path)

    @classmethod
    def from_env(cls, env_file: str | Path | None = None, **overrides: Any) -> ClientConfig:
        """Build a config from ``HEALTRACK_*`` environment variables.

        Args:
            env_file: Optional .env file to load before reading the environment
            **overrides: Explicit values that win over the environment

        Returns:
            Validated client configuration

        Raises:
            pydantic.ValidationError: If any value is invalid
        """
        load_dotenv(env_file)

        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name == "identity_scopes":
                values[name] = [s for s in raw.replace(",", " ").split() if s]
            else:
                values[name] = raw

        values.update(overrides)
        return cls(**values)
