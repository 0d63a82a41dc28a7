"""Application configuration."""
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    app_debug: bool = False
    log_level: str = "INFO"

    # Database - required, read from the environment
    database_url: str = Field(
        ...,
        description="Database connection URL (required)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections",
    )
    db_pool_recycle: int = Field(
        default=1800,
        description="Connection recycle time in seconds",
    )
    db_lock_timeout_ms: int = Field(
        default=5000,
        description="Row lock wait bound per transaction (PostgreSQL only)",
    )

    # Redis - required (notifications + Celery broker)
    redis_url: str = Field(
        ...,
        description="Redis connection URL (required)",
    )
    redis_socket_timeout: float = 5.0
    redis_socket_connect_timeout: float = 5.0

    # Check-in
    default_checkin_window_minutes: int = Field(
        default=30,
        description="Minutes before start when check-in opens (no override row)",
    )
    checkin_reminder_lookback_minutes: int = Field(
        default=2,
        description="Window after check-in opens during which reminders go out",
    )
    finalize_lookback_hours: int = Field(
        default=2,
        description="Only auto-finalize tournaments that started this recently",
    )

    # Waitlist
    waitlist_ratio: float = Field(
        default=0.5,
        description="Waitlist capacity as a fraction of max_teams (0 disables)",
    )
    waitlist_min_slots: int = Field(
        default=1,
        description="Lower bound for waitlist capacity when enabled",
    )
    waitlist_hold_grace_minutes: int = Field(
        default=120,
        description="Waitlist fee holds expire this long after tournament start",
    )

    # Hold sweeper
    hold_sweep_batch_size: int = Field(
        default=100,
        description="Max holds expired per sweeper run",
    )

    # Notifications
    notification_channel_prefix: str = "arena:notifications"

    # Celery
    celery_timezone: str = "UTC"

    @field_validator("waitlist_ratio")
    @classmethod
    def validate_waitlist_ratio(cls, v: float) -> float:
        """Waitlist ratio must not be negative."""
        if v < 0:
            raise ValueError("waitlist_ratio must be >= 0")
        return v

    @field_validator(
        "waitlist_min_slots",
        "hold_sweep_batch_size",
        "default_checkin_window_minutes",
        "waitlist_hold_grace_minutes",
    )
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.app_debug:
                raise ValueError(
                    "app_debug must be False in production environment"
                )
            if self.log_level == "DEBUG":
                import warnings
                warnings.warn(
                    "DEBUG log level in production may expose sensitive information"
                )
        return self

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
