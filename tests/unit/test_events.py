# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the event bus and audit logger."""

import pytest

from src.infrastructure.audit import AuditEntry, AuditLogger, EventBusAuditSink
from src.infrastructure.events import EventBus, EventData, EventTypes


class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_exact_and_pattern_subscribers(self) -> None:
        bus = EventBus()
        exact: list[str] = []
        pattern: list[str] = []

        async def on_exact(event: EventData) -> None:
            exact.append(event.event_type)

        async def on_pattern(event: EventData) -> None:
            pattern.append(event.event_type)

        bus.subscribe(EventTypes.Message.DELIVERED, on_exact)
        bus.subscribe("message.*", on_pattern)

        await bus.publish(EventTypes.Message.DELIVERED, {"message_id": "msg_1"})
        await bus.publish("message.sent", {"message_id": "msg_1"})
        await bus.publish("emergency.resolved", {"emergency_id": "emg_1"})

        assert exact == ["message.delivered"]
        assert pattern == ["message.delivered", "message.sent"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_reach_publisher(self) -> None:
        bus = EventBus()
        received: list[dict] = []

        async def broken(event: EventData) -> None:
            raise RuntimeError("handler bug")

        async def healthy(event: EventData) -> None:
            received.append(event.payload)

        bus.subscribe("message.sent", broken)
        bus.subscribe("message.sent", healthy)

        event = await bus.publish("message.sent", {"message_id": "msg_1"})

        assert event.event_type == "message.sent"
        assert received == [{"message_id": "msg_1"}]
        assert bus.get_stats()["handler_errors"] == 1

    def test_unsubscribe(self) -> None:
        bus = EventBus()

        async def handler(event: EventData) -> None:
            return None

        bus.subscribe("*.cancelled", handler)

        assert bus.unsubscribe("*.cancelled", handler)
        assert not bus.unsubscribe("*.cancelled", handler)
        assert bus.get_stats()["total_handlers"] == 0


class FailingSink:
    async def write(self, entry: AuditEntry) -> None:
        raise OSError("disk full")


class ListSink:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def write(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


class TestAuditLogger:
    """Tests for AuditLogger."""

    @pytest.mark.asyncio
    async def test_sink_failure_is_counted_not_raised(self, clock) -> None:
        healthy = ListSink()
        audit = AuditLogger([FailingSink(), healthy], clock=clock)

        entry = await audit.record(
            "message.cancel",
            entity_type="message",
            entity_id="msg_1",
            actor_id="admin-1",
        )

        assert entry.occurred_at == clock()
        assert healthy.entries == [entry]
        assert audit.failure_count == 1

    @pytest.mark.asyncio
    async def test_event_bus_sink_mirrors_entries(self, clock) -> None:
        bus = EventBus()
        seen: list[EventData] = []

        async def on_audit(event: EventData) -> None:
            seen.append(event)

        bus.subscribe("audit.*", on_audit)
        audit = AuditLogger([EventBusAuditSink(bus)], clock=clock)

        await audit.record(
            "emergency.initiate",
            entity_type="emergency",
            entity_id="emg_1",
            data={"type": "school_closure"},
        )

        assert seen[0].event_type == "audit.emergency.initiate"
        assert seen[0].payload["data"] == {"type": "school_closure"}
        assert seen[0].payload["occurred_at"] == clock().isoformat()
