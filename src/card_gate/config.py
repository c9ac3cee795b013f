"""Gateway configuration loaded once at startup."""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_POLL_TIMEOUT_SECONDS = 300.0
# Fixed wait after the fingerprinting iframe is posted; the processor does
# not signal completion to the merchant page.
DEFAULT_FINGERPRINT_SETTLE_SECONDS = 3.0


class GatewayConfig(BaseModel):
    """Processor credentials and endpoints.

    The secret key is process-wide and read-only; a single config instance
    is shared by every connector and verifier.
    """
    project_id: int = Field(..., description="Processor project identifier")
    secret_key: SecretStr = Field(..., description="Shared HMAC secret")
    api_url: str = Field(..., description="Processor API base URL")
    public_base_url: str = Field(..., description="Public URL of this application")
    timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)
    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    poll_timeout_seconds: float = Field(default=DEFAULT_POLL_TIMEOUT_SECONDS, gt=0)
    fingerprint_settle_seconds: float = Field(default=DEFAULT_FINGERPRINT_SETTLE_SECONDS, ge=0)

    model_config = {"frozen": True}

    @field_validator("api_url")
    @classmethod
    def strip_api_url(cls, v: str) -> str:
        if not v:
            raise ValueError("api_url must not be empty")
        return v.rstrip("/")

    @field_validator("public_base_url")
    @classmethod
    def force_https(cls, v: str) -> str:
        """Processors reject non-HTTPS return URLs, so upgrade unconditionally."""
        if not v:
            raise ValueError("public_base_url must not be empty")
        v = v.strip().rstrip("/")
        if v.lower().startswith("http://"):
            v = "https://" + v[len("http://"):]
        elif not v.lower().startswith("https://"):
            v = "https://" + v
        return v

    @classmethod
    def from_env(cls, prefix: str = "PAYMENT_") -> "GatewayConfig":
        """Build the configuration from environment variables.

        Raises:
            ConfigurationError: If a required variable is missing or invalid.
        """
        project_id = os.getenv(f"{prefix}PROJECT_ID")
        secret_key = os.getenv(f"{prefix}SECRET_KEY")
        api_url = os.getenv(f"{prefix}API_URL")
        public_url = os.getenv("PUBLIC_APP_URL")

        missing = [
            name for name, value in (
                (f"{prefix}PROJECT_ID", project_id),
                (f"{prefix}SECRET_KEY", secret_key),
                (f"{prefix}API_URL", api_url),
                ("PUBLIC_APP_URL", public_url),
            ) if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing gateway configuration: {', '.join(missing)}"
            )

        try:
            return cls(
                project_id=int(project_id),
                secret_key=secret_key,
                api_url=api_url,
                public_base_url=public_url,
                timeout_seconds=_float_env(f"{prefix}HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
                poll_interval_seconds=_float_env(f"{prefix}POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
                poll_timeout_seconds=_float_env(f"{prefix}POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT_SECONDS),
                fingerprint_settle_seconds=_float_env(
                    f"{prefix}3DS_SETTLE_DELAY", DEFAULT_FINGERPRINT_SETTLE_SECONDS
                ),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid gateway configuration: {e}") from e


def _float_env(name: str, default: float) -> float:
    raw: Optional[str] = os.getenv(name)
    if raw in (None, ""):
        return default
    return float(raw)
