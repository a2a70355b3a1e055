# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Utility functions and helpers for the notification core.

This package contains cross-cutting utilities:
- logging: Structured logging with structlog
- datetime: Timezone-aware datetime operations and the Clock alias
"""

from src.utils.datetime import (
    Clock,
    end_of_day,
    end_of_week,
    ensure_utc,
    is_expired,
    start_of_day,
    start_of_week,
    utc_now,
)
from src.utils.logging import get_audit_logger, log_context, setup_logging

__all__ = [
    # Logging
    "setup_logging",
    "get_audit_logger",
    "log_context",
    # Datetime
    "Clock",
    "utc_now",
    "ensure_utc",
    "start_of_day",
    "end_of_day",
    "start_of_week",
    "end_of_week",
    "is_expired",
]
