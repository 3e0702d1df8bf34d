"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for reconciliation engine configuration.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: RECONCILIATION__POLL_INTERVAL_SECONDS=10
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("billsync", description="Application name")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str = Field(
            "sqlite+aiosqlite:///./billsync.sqlite", description="Async SQLAlchemy database URL"
        )
        echo: bool = Field(False, description="Echo SQL statements")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Stripe Configuration
    # ============================================================

    class StripeSettings(BaseModel):
        """Stripe client and price catalog configuration."""

        api_key: str | None = Field(None, description="Stripe secret API key")
        api_version: str | None = Field(None, description="Pinned Stripe API version")
        max_network_retries: int = Field(2, description="SDK-level retries for network failures")

        # Price catalog lookup keys
        free_price_lookup_key: str = Field("free", description="Lookup key of the free plan price")
        paid_price_lookup_key: str = Field("pro", description="Lookup key of the paid plan price")

        @property
        def is_configured(self) -> bool:
            return bool(self.api_key)

    stripe: StripeSettings = StripeSettings()  # type: ignore[call-arg]

    # ============================================================
    # Reconciliation Loops
    # ============================================================

    class ReconciliationSettings(BaseModel):
        """Timing constants for the two periodic loops."""

        event_polling_enabled: bool = Field(True, description="Run the event reconciliation loop")
        poll_interval_seconds: float = Field(5.0, description="Seconds between event polls")
        events_page_size: int = Field(100, description="Events requested per page (max 100)")
        stale_page_limit: int = Field(
            4, description="Consecutive fully-processed pages tolerated before pagination stops"
        )
        event_max_age_hours: int = Field(
            24, description="Events older than this are marked processed without handling"
        )

        usage_sync_enabled: bool = Field(True, description="Run the usage-to-billing loop")
        usage_sync_interval_seconds: float = Field(
            60.0, description="Seconds between usage sync runs"
        )

        @field_validator("events_page_size")
        @classmethod
        def validate_page_size(cls, v: int) -> int:
            """Stripe accepts a limit between 1 and 100."""
            if not 1 <= v <= 100:
                raise ValueError("events_page_size must be between 1 and 100")
            return v

        @field_validator("stale_page_limit")
        @classmethod
        def validate_stale_page_limit(cls, v: int) -> int:
            if v < 0:
                raise ValueError("stale_page_limit must not be negative")
            return v

    reconciliation: ReconciliationSettings = ReconciliationSettings()  # type: ignore[call-arg]

    # ============================================================
    # Notifications
    # ============================================================

    class NotificationSettings(BaseModel):
        """Where plan-change and credential-refresh notifications are sent."""

        webhook_url: str | None = Field(None, description="HTTP endpoint receiving notifications")
        timeout_seconds: float = Field(5.0, description="Notification request timeout")

    notifications: NotificationSettings = NotificationSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")
        otel_service_name: str = Field("billsync", description="Service name for metrics")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
