# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest fixtures for database integration tests.

Each test gets a fresh SQLite file under the pytest tmp_path.
"""

from pathlib import Path
from typing import AsyncGenerator

import pytest_asyncio

from src.core.config.settings import DatabaseSettings
from src.infrastructure.database import DatabaseManager, SqlAlchemyNotificationStore


@pytest_asyncio.fixture(scope="function")
async def db_manager(tmp_path: Path) -> AsyncGenerator[DatabaseManager, None]:
    """Create an initialized database with all notification tables."""
    db = DatabaseManager(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'notifications.db'}"))
    await db.init()
    await db.create_tables()

    yield db

    await db.close()


@pytest_asyncio.fixture(scope="function")
async def sql_store(db_manager: DatabaseManager) -> SqlAlchemyNotificationStore:
    return SqlAlchemyNotificationStore(db_manager)
