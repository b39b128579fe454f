"""
Engine configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded keys, URLs, or secrets.

The device-cloud key pair is exposed as an immutable :class:`Credentials`
object that is handed to the client at construction. Nothing in the engine
reads credentials from ambient global state.

CHANGELOG:
- 2026-03-09: Add CRON_SECRET and email settings (STORY-112)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import field_validator
from pydantic_settings import BaseSettings


@dataclass(frozen=True, slots=True)
class Credentials:
    """Device-cloud key pair. Never persisted, never logged in clear."""

    access_key: str
    secret_key: str

    def __repr__(self) -> str:
        return f"Credentials(access_key={self.access_key[:4]!r}..., secret_key=***)"


class EngineSettings(BaseSettings):
    """Telemetry engine configuration.

    Attributes:
        ecoflow_access_key: Device-cloud access key.
        ecoflow_secret_key: Device-cloud secret key used for HMAC signing.
        ecoflow_base_url: Device-cloud base URL (must be HTTPS).
        database_url: Async SQLAlchemy URL for the storage collaborator.
        request_timeout_s: Bounded timeout per device-cloud call.
        max_concurrent_requests: Per-account limiter for collection calls.
        suppression_window_min: Minimum minutes between two notifications
            of the same kind for the same user/device.
        offline_lookback_min: A device with no reading in this window is
            considered offline.
        resend_api_key: API key for the email delivery service. Empty
            disables delivery; attempts are logged as failed.
        alert_from_address: Sender address for alert emails.
        dashboard_url: Link target included in alert emails.
        cron_secret: Shared secret for the cron trigger API.
    """

    ecoflow_access_key: str
    ecoflow_secret_key: str
    ecoflow_base_url: str = "https://api-e.ecoflow.com"
    database_url: str = "sqlite+aiosqlite:///./telemetry.db"
    request_timeout_s: float = 30.0
    max_concurrent_requests: int = 4
    suppression_window_min: int = 30
    offline_lookback_min: int = 60
    resend_api_key: str = ""
    alert_from_address: str = "EcoFlow Monitor <alerts@example.com>"
    dashboard_url: str = "https://localhost:3000"
    cron_secret: str = ""

    @property
    def credentials(self) -> Credentials:
        """Immutable credential object for the signed client."""
        return Credentials(
            access_key=self.ecoflow_access_key,
            secret_key=self.ecoflow_secret_key,
        )

    @field_validator("ecoflow_access_key", "ecoflow_secret_key")
    @classmethod
    def keys_must_not_be_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only credentials at startup."""
        if not v.strip():
            raise ValueError("ECOFLOW_ACCESS_KEY and ECOFLOW_SECRET_KEY must not be empty")
        return v.strip()

    @field_validator("ecoflow_base_url")
    @classmethod
    def base_url_must_be_https(cls, v: str) -> str:
        """Validate that the device-cloud URL uses HTTPS."""
        if not v.lower().startswith("https://"):
            raise ValueError(f"ECOFLOW_BASE_URL must use HTTPS (got: '{v[:20]}...')")
        return v.rstrip("/")

    @field_validator("request_timeout_s")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        """Every device-cloud call must have a bounded timeout."""
        if v <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        return v

    @field_validator("max_concurrent_requests")
    @classmethod
    def concurrency_must_be_valid(cls, v: int) -> int:
        """Validate the limiter size is between 1 and 32."""
        if v < 1 or v > 32:
            raise ValueError("MAX_CONCURRENT_REQUESTS must be >= 1 and <= 32")
        return v

    @field_validator("suppression_window_min", "offline_lookback_min")
    @classmethod
    def window_must_be_positive(cls, v: int) -> int:
        """Alert windows must be at least one minute."""
        if v < 1:
            raise ValueError("Alert windows must be >= 1 minute")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
