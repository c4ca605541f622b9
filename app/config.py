"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Studio Booking Engine"
    api_version: str = "0.1.0"
    api_description: str = "Session reservations against prepaid class credits"

    # Security - comma-separated keys accepted in the X-API-Key header
    api_keys: str = ""

    @property
    def valid_api_keys(self) -> list[str]:
        """Get list of accepted service API keys."""
        keys = []
        for key in self.api_keys.split(","):
            key = key.strip()
            if key and key not in keys:
                keys.append(key)
        return keys

    # Booking Policy
    studio_timezone: str = "UTC"  # Session dates/times are wall-clock in this zone
    default_booking_cutoff_minutes: int = 5
    default_cancellation_cutoff_hours: int = 12

    # Concurrency - bounded retry for transient conflicts
    booking_max_attempts: int = 4
    booking_retry_base_delay_seconds: float = 0.05
    booking_retry_max_delay_seconds: float = 1.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "studio-booking-engine"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        try:
            ZoneInfo(self.studio_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"STUDIO_TIMEZONE is not a known timezone: {self.studio_timezone}")

        if self.booking_max_attempts < 1:
            errors.append("BOOKING_MAX_ATTEMPTS must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def studio_tz(self) -> ZoneInfo:
        """Timezone used to interpret session dates and times."""
        return ZoneInfo(self.studio_timezone)


# Global settings instance - validates at import time
settings = Settings()
