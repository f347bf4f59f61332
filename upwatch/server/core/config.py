"""Application configuration settings."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./upwatch.db"
    database_echo: bool = False

    # API
    api_title: str = "Upwatch API"
    api_version: str = "0.1.0"
    api_prefix: str = "/api/v1"

    # CORS
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Logging
    log_level: str = "INFO"

    # Plans (None = packaged catalog)
    plans_file: str | None = None

    # Scheduler
    scheduler_enabled: bool = True
    tick_interval_seconds: float = 1.0
    reconcile_interval_seconds: float = 30.0
    backpressure_delay_seconds: float = 5.0

    # Region worker pools
    region_concurrency: int = 50
    queue_high_water_mark: int = 500
    probe_timeout_margin_seconds: float = 2.0
    region_proxies: dict[str, str] = {}

    # Incident policy
    failure_threshold: int = 2
    recovery_threshold: int = 1
    renotify_interval_minutes: float = 15.0

    # Store retries
    store_retry_attempts: int = 3
    store_retry_delay_seconds: float = 0.5
    store_retry_multiplier: float = 2.0

    # Email (SMTP). Without smtp_host, notifications are only logged.
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    sender_email: str = "noreply@localhost"
    sender_name: str = "Upwatch"

    @field_validator(
        "tick_interval_seconds",
        "reconcile_interval_seconds",
        "renotify_interval_minutes",
        "store_retry_delay_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Reject zero or negative durations."""
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator(
        "region_concurrency",
        "queue_high_water_mark",
        "failure_threshold",
        "recovery_threshold",
        "store_retry_attempts",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Reject zero or negative counts."""
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("backpressure_delay_seconds", "probe_timeout_margin_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Reject negative delays."""
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("store_retry_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """Backoff must not shrink between attempts."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Cached Settings instance.
    """
    return Settings()
