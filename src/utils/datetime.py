# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for the notification core.

All timestamps handled by the core are timezone-aware UTC datetimes.
Components never read the wall clock directly; they receive a ``Clock``
callable so that schedulers, tests and replays can control time.

Usage:
------
    from src.utils.datetime import utc_now, start_of_day

    now = utc_now()
    window_start = start_of_day(now)
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Naive datetimes (as returned by SQLite) are assumed to be UTC.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def start_of_day(moment: datetime) -> datetime:
    """Get midnight UTC of the day containing ``moment``."""
    return ensure_utc(moment).replace(hour=0, minute=0, second=0, microsecond=0)  # type: ignore[union-attr]


def end_of_day(moment: datetime) -> datetime:
    """Get the last microsecond of the UTC day containing ``moment``."""
    return start_of_day(moment) + timedelta(days=1) - timedelta(microseconds=1)


def start_of_week(moment: datetime) -> datetime:
    """Get Monday 00:00 UTC of the ISO week containing ``moment``."""
    day_start = start_of_day(moment)
    return day_start - timedelta(days=day_start.weekday())


def end_of_week(moment: datetime) -> datetime:
    """Get the last microsecond of the ISO week containing ``moment``."""
    return start_of_week(moment) + timedelta(days=7) - timedelta(microseconds=1)


def is_expired(expiry: datetime | None, now: datetime) -> bool:
    """Check if an optional expiry has passed.

    Unlike token expiry, a missing expiry here means "never expires".

    Args:
        expiry: The expiry datetime, or None for open-ended records.
        now: The reference time.

    Returns:
        True only if an expiry is set and lies strictly before ``now``.
    """
    if expiry is None:
        return False
    return ensure_utc(expiry) < ensure_utc(now)  # type: ignore[operator]
