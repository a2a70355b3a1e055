# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for application settings."""

import os
from unittest.mock import patch

import pytest
from pydantic import SecretStr, ValidationError

from src.core.config.settings import (
    DatabaseSettings,
    DeliverySettings,
    RateLimitSettings,
    Settings,
    SMTPSettings,
    clear_settings_cache,
    get_settings,
)


class TestDeliverySettings:
    """Tests for DeliverySettings."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        settings = DeliverySettings()

        assert settings.channel_order == ["rich_messaging", "sms", "email"]
        assert settings.recall_window_minutes == 5
        assert settings.channel_timeout_seconds == 30.0

    def test_repeated_channel_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DeliverySettings(channel_order=["sms", "sms"])

    def test_empty_channel_order_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DeliverySettings(channel_order=[])


class TestRateLimitSettings:
    """Tests for RateLimitSettings."""

    def test_default_values(self) -> None:
        settings = RateLimitSettings()

        assert settings.teacher_daily_limit == 20
        assert settings.teacher_weekly_limit == 50
        assert settings.student_daily_limit == 3
        assert settings.same_parent_cooldown_minutes == 60
        assert settings.max_bulk_recipients == 30

    def test_environment_override(self) -> None:
        """Test values are read with the RATE_LIMIT_ prefix."""
        with patch.dict(os.environ, {"RATE_LIMIT_TEACHER_DAILY_LIMIT": "40"}):
            settings = RateLimitSettings()

        assert settings.teacher_daily_limit == 40


class TestSMTPSettings:
    """Tests for SMTPSettings."""

    def test_is_configured_requires_credentials(self) -> None:
        assert not SMTPSettings(username="").is_configured
        assert SMTPSettings(username="mailer", password=SecretStr("secret")).is_configured


class TestSettings:
    """Tests for the main Settings class."""

    def test_sqlite_is_default_store(self) -> None:
        assert DatabaseSettings().is_sqlite

    def test_production_rejects_default_provider_secrets(self) -> None:
        with patch.dict(os.environ, {"ENVIRONMENT": "production"}, clear=False):
            with pytest.raises(ValidationError, match="SMS API key"):
                Settings()

    def test_production_accepts_real_secrets(self) -> None:
        env = {
            "ENVIRONMENT": "production",
            "SMS_API_KEY": "live-sms-key",
            "RICH_MESSAGING_API_TOKEN": "live-token",
        }
        with patch.dict(os.environ, env):
            settings = Settings()

        assert settings.is_production
        assert not settings.is_development

    def test_get_settings_is_cached(self) -> None:
        clear_settings_cache()
        try:
            assert get_settings() is get_settings()
        finally:
            clear_settings_cache()
