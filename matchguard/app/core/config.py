import json
import re
from typing import Annotated, Any, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma separated values and bare hosts.
    if raw.startswith(("[", '"')):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
        else:
            origins.append(f"http://{part}")
            origins.append(f"https://{part}")

    return list(dict.fromkeys(origins))


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    They are read once at process start and treated as read-only afterwards.
    """

    # Deployment environment - gates production-only strictness
    environment: Literal["development", "production", "test"] = "development"

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_fail_open: bool = True  # Allow traffic when the store fails
    rate_limit_sweep_interval_seconds: int = 300
    # Only honour X-Forwarded-For when a trusted proxy sets it
    trust_forwarded_for: bool = True

    # Idempotency settings
    idempotency_enabled: bool = True
    idempotency_sweep_interval_seconds: int = 600

    # Validation settings
    validation_max_payload_bytes: int = 100_000  # Serialized JSON cap (100KB)
    max_request_body_bytes: int = 1024 * 1024  # Raw body cap at the ASGI layer

    # Payments provider webhook settings
    webhook_timestamp_tolerance: int = 300  # 5 minutes
    stripe_webhook_secret: str = ""  # Empty skips HMAC verification

    # Store settings
    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    store_key_prefix: str = "matchguard"

    # Default redirect base for checkout and portal sessions
    app_base_url: str = "http://localhost:3000"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "rate_limit_sweep_interval_seconds",
        "idempotency_sweep_interval_seconds",
    )
    @classmethod
    def validate_sweep_interval(cls, v: int) -> int:
        """Validate sweep intervals are positive."""
        if v < 1:
            raise ValueError("sweep intervals must be at least 1 second")
        return v

    @field_validator("validation_max_payload_bytes", "max_request_body_bytes")
    @classmethod
    def validate_size_positive(cls, v: int) -> int:
        """Validate size limits are positive."""
        if v < 1:
            raise ValueError("size limits must be at least 1 byte")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
