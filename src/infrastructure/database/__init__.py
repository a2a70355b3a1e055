# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Durable storage for the notification core over SQLAlchemy async.

SQLite via aiosqlite is the default backend; any async SQLAlchemy URL
works.

Example:
    from src.infrastructure.database import (
        DatabaseManager,
        SqlAlchemyNotificationStore,
    )

    db = DatabaseManager(settings.database)
    await db.init()
    await db.create_tables()
    store = SqlAlchemyNotificationStore(db)
"""

from src.infrastructure.database.connection import DatabaseError, DatabaseManager
from src.infrastructure.database.models import Base
from src.infrastructure.database.store import SqlAlchemyNotificationStore

__all__ = [
    "Base",
    "DatabaseError",
    "DatabaseManager",
    "SqlAlchemyNotificationStore",
]
