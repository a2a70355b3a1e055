# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration for the parent notification
core. Settings are loaded from environment variables with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A cached instance is provided via get_settings(); components receive the
pieces they need explicitly rather than reading it themselves.

Example:
    >>> from src.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> settings.rate_limit.teacher_daily_limit
    20
"""

from functools import lru_cache
from typing import Literal, Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ChannelName = Literal["rich_messaging", "sms", "email"]


class DatabaseSettings(BaseSettings):
    """Durable store configuration.

    Attributes:
        url: Async SQLAlchemy URL. SQLite via aiosqlite by default.
        echo: Echo SQL statements to the log.
        pool_pre_ping: Verify pooled connections before use.
    """

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore",
    )

    url: str = "sqlite+aiosqlite:///./notifications.db"
    echo: bool = False
    pool_pre_ping: bool = True

    @property
    def is_sqlite(self) -> bool:
        """Check whether the configured backend is SQLite."""
        return self.url.startswith("sqlite")


class DeliverySettings(BaseSettings):
    """Delivery state machine configuration.

    Attributes:
        channel_order: Channel rank order used for fallback.
        channel_timeout_seconds: Per-attempt timeout, treated as a failure.
        recall_window_minutes: Minutes after creation during which recall is allowed.
        queue_batch_size: Maximum messages claimed per queue processor tick.
        max_concurrent_sends: Concurrent channel sends across distinct messages.
        stale_send_margin_seconds: Grace period past the channel timeout before an
            unfinished send is treated as timed out.
    """

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_",
        extra="ignore",
    )

    channel_order: list[ChannelName] = Field(
        default_factory=lambda: ["rich_messaging", "sms", "email"]
    )
    channel_timeout_seconds: float = 30.0
    recall_window_minutes: int = 5
    queue_batch_size: int = 50
    max_concurrent_sends: int = 10
    stale_send_margin_seconds: int = 60

    @field_validator("channel_order")
    @classmethod
    def validate_channel_order(cls, value: list[str]) -> list[str]:
        """Reject empty or repeating channel orders."""
        if not value:
            raise ValueError("channel_order must contain at least one channel")
        if len(set(value)) != len(value):
            raise ValueError("channel_order must not repeat channels")
        return value


class RateLimitSettings(BaseSettings):
    """Sender and recipient rate limiting.

    Attributes:
        teacher_daily_limit: Messages one sender may create per UTC day.
        teacher_weekly_limit: Messages one sender may create per ISO week.
        student_daily_limit: Messages about one student per UTC day.
        same_parent_cooldown_minutes: Quiet period between messages to one guardian.
        min_send_interval_seconds: Minimum gap between a sender's messages.
        admin_override_multiplier: Default multiplier for override grants.
        max_bulk_recipients: Upper bound on guardians per request.
    """

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        extra="ignore",
    )

    teacher_daily_limit: int = 20
    teacher_weekly_limit: int = 50
    student_daily_limit: int = 3
    same_parent_cooldown_minutes: int = 60
    min_send_interval_seconds: int = 30
    admin_override_multiplier: float = 3.0
    max_bulk_recipients: int = 30


class AbuseSettings(BaseSettings):
    """Abuse detection thresholds."""

    model_config = SettingsConfigDict(
        env_prefix="ABUSE_",
        extra="ignore",
    )

    rapid_fire_count: int = 5
    rapid_fire_window_minutes: int = 10
    rejection_threshold: int = 3
    rejection_lookback_days: int = 30
    duplicate_window_hours: int = 24
    max_body_length: int = 2000
    max_subject_length: int = 100


class EmergencySettings(BaseSettings):
    """Emergency broadcast configuration.

    Attributes:
        escalation_check_interval_seconds: Period of the background escalation check.
        admin_roles: Roles allowed to initiate, cancel and resolve any emergency.
    """

    model_config = SettingsConfigDict(
        env_prefix="EMERGENCY_",
        extra="ignore",
    )

    escalation_check_interval_seconds: int = 30
    admin_roles: list[str] = Field(
        default_factory=lambda: ["school_admin", "platform_admin"]
    )


class OfflineQueueSettings(BaseSettings):
    """Offline queue retention and replay budget."""

    model_config = SettingsConfigDict(
        env_prefix="OFFLINE_QUEUE_",
        extra="ignore",
    )

    max_size: int = 100
    max_replay_attempts: int = 5
    retention_days: int = 7
    device_id: str = "server"


class WorkerSettings(BaseSettings):
    """Periodic background task configuration.

    Attributes:
        queue_poll_seconds: Interval of the queue processor.
        offline_sync_seconds: Interval of the offline replay trigger.
        stale_send_sweep_seconds: Interval of the stale send recovery.
        connectivity_probe_url: URL probed to detect network availability.
        connectivity_timeout_seconds: Timeout of a single probe.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        extra="ignore",
    )

    queue_poll_seconds: int = 20
    offline_sync_seconds: int = 60
    stale_send_sweep_seconds: int = 60
    connectivity_probe_url: str = "https://www.gstatic.com/generate_204"
    connectivity_timeout_seconds: float = 5.0


class SMTPSettings(BaseSettings):
    """SMTP configuration for the email channel."""

    model_config = SettingsConfigDict(
        env_prefix="SMTP_",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: SecretStr = SecretStr("")
    use_tls: bool = True
    from_email: str = "noreply@school.example"
    from_name: str = "School Notifications"
    timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        """Check whether SMTP credentials are present."""
        return bool(self.host and self.username and self.password.get_secret_value())


class SMSSettings(BaseSettings):
    """SMS gateway configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SMS_",
        extra="ignore",
    )

    api_url: str = "http://localhost:8081/sms/send"
    api_key: SecretStr = SecretStr("change-this-sms-key")
    sender_id: str = "SCHOOL"
    timeout: float = 30.0


class RichMessagingSettings(BaseSettings):
    """Rich messaging (chat app) gateway configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RICH_MESSAGING_",
        extra="ignore",
    )

    api_url: str = "http://localhost:8082/messages"
    api_token: SecretStr = SecretStr("change-this-rich-messaging-token")
    timeout: float = 30.0


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached singleton instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        database: Durable store settings.
        delivery: Delivery state machine settings.
        rate_limit: Rate limiting settings.
        abuse: Abuse detection settings.
        emergency: Emergency broadcast settings.
        offline_queue: Offline queue settings.
        worker: Background worker settings.
        smtp: Email channel settings.
        sms: SMS channel settings.
        rich_messaging: Rich messaging channel settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    # Subsettings - loaded with their own env prefixes
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    abuse: AbuseSettings = Field(default_factory=AbuseSettings)
    emergency: EmergencySettings = Field(default_factory=EmergencySettings)
    offline_queue: OfflineQueueSettings = Field(default_factory=OfflineQueueSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    smtp: SMTPSettings = Field(default_factory=SMTPSettings)
    sms: SMSSettings = Field(default_factory=SMSSettings)
    rich_messaging: RichMessagingSettings = Field(default_factory=RichMessagingSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production with default provider secrets.
        """
        if self.environment == "production":
            if self.sms.api_key.get_secret_value() == "change-this-sms-key":
                raise ValueError(
                    "SMS API key must be changed from default in production. "
                    "Set SMS_API_KEY environment variable."
                )
            default_token = "change-this-rich-messaging-token"
            if self.rich_messaging.api_token.get_secret_value() == default_token:
                raise ValueError(
                    "Rich messaging token must be changed from default in production. "
                    "Set RICH_MESSAGING_API_TOKEN environment variable."
                )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call re-reads the environment."""
    get_settings.cache_clear()
