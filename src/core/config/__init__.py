# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for the notification core.

This package provides centralized configuration management:
- Settings: Pydantic-based settings loaded from environment variables
- YAML loader: Utilities for loading template catalogs from YAML files

Example:
    >>> from src.core.config import get_settings
    >>> settings = get_settings()
    >>> settings.delivery.channel_order
    ['rich_messaging', 'sms', 'email']

    >>> from src.core.config import load_yaml
    >>> catalog = load_yaml(Path("config/templates.yaml"))
"""

from src.core.config.settings import (
    AbuseSettings,
    DatabaseSettings,
    DeliverySettings,
    EmergencySettings,
    OfflineQueueSettings,
    RateLimitSettings,
    RichMessagingSettings,
    Settings,
    SMSSettings,
    SMTPSettings,
    WorkerSettings,
    clear_settings_cache,
    get_settings,
)
from src.core.config.yaml_loader import (
    YAMLLoadError,
    deep_merge,
    load_yaml,
    load_yaml_directory,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "clear_settings_cache",
    # Subsettings
    "DatabaseSettings",
    "DeliverySettings",
    "RateLimitSettings",
    "AbuseSettings",
    "EmergencySettings",
    "OfflineQueueSettings",
    "WorkerSettings",
    "SMTPSettings",
    "SMSSettings",
    "RichMessagingSettings",
    # YAML utilities
    "load_yaml",
    "load_yaml_directory",
    "deep_merge",
    "YAMLLoadError",
]
