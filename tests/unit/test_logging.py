# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for structured logging helpers."""

from datetime import datetime, timezone

import pytest
import structlog
from structlog.testing import capture_logs

from src.infrastructure.audit import AuditEntry, StructlogAuditSink
from src.utils.logging import log_context


class TestLogContext:
    """Tests for log_context."""

    def test_values_are_bound_inside_the_block_only(self) -> None:
        with log_context(sender_id="teacher-1", category="attendance"):
            bound = structlog.contextvars.get_contextvars()

        assert bound == {"sender_id": "teacher-1", "category": "attendance"}
        assert "sender_id" not in structlog.contextvars.get_contextvars()

    def test_nested_context_restores_outer_values(self) -> None:
        with log_context(sender_id="admin-1"):
            with log_context(sender_id="teacher-2", student_id="stu-1"):
                inner = structlog.contextvars.get_contextvars()
            outer = structlog.contextvars.get_contextvars()

        assert inner["sender_id"] == "teacher-2"
        assert outer == {"sender_id": "admin-1"}


class TestStructlogAuditSink:
    """Tests for the structlog audit sink."""

    @pytest.mark.asyncio
    async def test_entry_is_logged_under_its_action(self) -> None:
        entry = AuditEntry(
            action="message.recalled",
            entity_type="message",
            entity_id="msg_1",
            occurred_at=datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc),
            actor_id="teacher-1",
        )

        with capture_logs() as logs:
            await StructlogAuditSink().write(entry)

        assert logs[0]["event"] == "message.recalled"
        assert logs[0]["entity_id"] == "msg_1"
        assert logs[0]["actor_id"] == "teacher-1"
        assert logs[0]["occurred_at"] == "2025-03-10T09:00:00+00:00"
