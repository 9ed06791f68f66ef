"""
Configuration for the Square sync core.

Settings come from environment variables (SQUARE_*), with the defaults
below for everything except the OAuth application credentials.
"""

import os
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ValidationError, field_validator

SQUARE_PRODUCTION_URL = "https://connect.squareup.com"
SQUARE_SANDBOX_URL = "https://connect.squareupsandbox.com"


class ConfigurationError(Exception):
    """Raised for missing credentials or invalid settings. Never retried."""
    pass


class SquareSettings(BaseModel):
    """Application-wide Square settings."""

    application_id: str = ""
    application_secret: str = ""
    environment: Literal["sandbox", "production"] = "sandbox"
    redirect_uri: str = ""

    # Client-side ceilings (Square's own limiter stays authoritative)
    requests_per_second: int = 10
    requests_per_minute: int = 500

    request_timeout: float = 30.0
    sync_timeout: float = 900.0

    max_retries: int = 3
    retry_backoff: float = 0.5

    token_refresh_threshold: float = 300.0
    batch_concurrency: int = 4
    api_version: str = "2024-01-18"

    @field_validator("requests_per_second", "requests_per_minute", "batch_concurrency", "max_retries")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("request_timeout", "sync_timeout")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout must be greater than zero")
        return v

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return SQUARE_PRODUCTION_URL
        return SQUARE_SANDBOX_URL

    @property
    def is_oauth_configured(self) -> bool:
        return bool(self.application_id and self.application_secret and self.redirect_uri)

    def require_oauth_credentials(self) -> None:
        """Fail fast when the OAuth application is not configured."""
        missing = [
            env_var
            for env_var, value in (
                ("SQUARE_APPLICATION_ID", self.application_id),
                ("SQUARE_APPLICATION_SECRET", self.application_secret),
                ("SQUARE_OAUTH_REDIRECT_URI", self.redirect_uri),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing Square configuration: {', '.join(missing)}")

    @classmethod
    def build(cls, **values: Any) -> "SquareSettings":
        """Construct settings, converting validation failures to ConfigurationError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid Square configuration: {e}") from e

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SquareSettings":
        """Load settings from SQUARE_* environment variables."""
        env = os.environ if environ is None else environ

        env_mappings = {
            "application_id": "SQUARE_APPLICATION_ID",
            "application_secret": "SQUARE_APPLICATION_SECRET",
            "environment": "SQUARE_ENVIRONMENT",
            "redirect_uri": "SQUARE_OAUTH_REDIRECT_URI",
            "requests_per_second": "SQUARE_REQUESTS_PER_SECOND",
            "requests_per_minute": "SQUARE_REQUESTS_PER_MINUTE",
            "request_timeout": "SQUARE_REQUEST_TIMEOUT",
            "sync_timeout": "SQUARE_SYNC_TIMEOUT",
            "max_retries": "SQUARE_MAX_RETRIES",
            "retry_backoff": "SQUARE_RETRY_BACKOFF",
            "token_refresh_threshold": "SQUARE_TOKEN_REFRESH_THRESHOLD",
            "batch_concurrency": "SQUARE_BATCH_CONCURRENCY",
            "api_version": "SQUARE_API_VERSION",
        }

        values: dict[str, Any] = {}
        for field_name, env_var in env_mappings.items():
            env_value = env.get(env_var)
            if env_value is not None and env_value.strip() != "":
                values[field_name] = env_value.strip()

        return cls.build(**values)
