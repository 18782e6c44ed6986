"""Configuration management for fieldline.

Loads pipeline settings from environment variables (or a .env file) using
Pydantic. No secrets are required; every field has a conservative default.

Usage:
    from fieldline.config import settings

    print(settings.cache_dir)
    print(settings.concurrency)
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """fieldline configuration from environment variables.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        cache_dir: Directory holding the Parquet feature cache
        output_dir: Directory receiving per-source output artifacts
        max_age_hours: Cached data older than this is re-fetched
        concurrency: Max simultaneous in-flight page requests
        batch_size: Records requested per page
        max_batches: Hard ceiling on pages issued per fetch run
        rate_limit: Requests/second per upstream client
        request_timeout: HTTP timeout in seconds
        max_retries: Retries per page for transient failures
        base_backoff: First retry delay in seconds (doubles each attempt)
        max_backoff: Upper bound on a single retry delay
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown env vars
    )

    # System Settings
    log_level: str = Field(default="INFO", description="Logging level")
    cache_dir: str = Field(default="data/cache", description="Parquet feature cache directory")
    output_dir: str = Field(default="data/raw", description="Output artifact directory")

    # Refresh policy
    max_age_hours: float = Field(
        default=24.0,
        gt=0,
        description="Maximum cache age before a source is re-fetched (hours)",
    )

    # Fetching
    concurrency: int = Field(default=4, ge=1, le=32, description="Max concurrent page fetches")
    batch_size: int = Field(default=2000, ge=1, description="Records per page")
    max_batches: int = Field(default=100, ge=1, description="Max pages per fetch run")

    # HTTP client (conservative defaults)
    rate_limit: int = Field(default=10, ge=1, description="Requests/second per client")
    request_timeout: float = Field(default=30.0, gt=0, description="Request timeout (seconds)")
    max_retries: int = Field(default=3, ge=0, description="Retries for transient failures")
    base_backoff: float = Field(default=1.0, ge=0, description="Initial retry delay (seconds)")
    max_backoff: float = Field(default=30.0, ge=0, description="Maximum retry delay (seconds)")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid:
            raise ValueError(f"log_level must be one of {valid}, got {v}")
        return v_upper

    @field_validator("max_backoff")
    @classmethod
    def validate_max_backoff(cls, v: float, info) -> float:
        """Ensure the backoff ceiling is not below the first delay."""
        base = info.data.get("base_backoff")
        if base is not None and v < base:
            raise ValueError(f"max_backoff ({v}) cannot be lower than base_backoff ({base})")
        return v


# Global settings instance, loaded once at import
settings = Settings()
