from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    The instance is frozen: build it once at startup and pass it around.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8080

    # Bucket state store
    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_connections: int = 50  # Shared pool for all in-flight checks
    store_timeout_seconds: float = 1.0  # Upper bound for one atomic unit

    # Token bucket settings
    bucket_ttl_seconds: int = 120  # Idle window before a bucket is reclaimed
    key_prefix: str = "ratelimit:"
    max_identity_length: int = 512

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in the TCP range."""
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("store_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return v

    @field_validator("bucket_ttl_seconds", "redis_max_connections", "max_identity_length")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)


@lru_cache
def get_settings() -> Settings:
    """Build the process-wide settings once, on first use at startup."""
    return Settings()
