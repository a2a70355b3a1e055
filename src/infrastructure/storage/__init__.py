# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Injected store interface and its in-memory implementation.

The durable SQLAlchemy implementation lives in
``src.infrastructure.database.store``.
"""

from src.infrastructure.storage.base import NotificationStore
from src.infrastructure.storage.memory import InMemoryNotificationStore

__all__ = [
    "InMemoryNotificationStore",
    "NotificationStore",
]
