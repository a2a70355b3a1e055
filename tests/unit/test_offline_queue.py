# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the offline send queue."""

import pytest

from src.core.notifications.errors import OfflineQueueFullError, RateLimitDenied
from src.core.notifications.models import DeliveryState, Priority, SendRequest


class RecordingSender:
    """Send function that records requests and raises scripted errors."""

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.requests: list[SendRequest] = []
        self.errors = list(errors or [])

    async def __call__(self, request: SendRequest) -> None:
        self.requests.append(request)
        if self.errors:
            raise self.errors.pop(0)


class TestEnqueue:
    """Tests for OfflineQueue.enqueue."""

    @pytest.mark.asyncio
    async def test_item_id_becomes_idempotency_key(self, offline_queue, make_request, recorder) -> None:
        item = await offline_queue.enqueue(make_request())

        assert item.id.startswith("offline_")
        assert item.payload["idempotency_key"] == item.id
        assert item.priority == 100
        assert recorder.types() == ["offline_queue.enqueued"]

    @pytest.mark.asyncio
    async def test_same_key_is_queued_once(self, offline_queue, make_request) -> None:
        first = await offline_queue.enqueue(make_request(idempotency_key="req-7"))
        second = await offline_queue.enqueue(make_request(idempotency_key="req-7"))

        assert first.id == second.id == "req-7"
        assert (await offline_queue.get_stats())["size"] == 1

    @pytest.mark.asyncio
    async def test_full_queue_evicts_lower_priority(
        self, offline_queue, make_request, audit_sink, clock
    ) -> None:
        offline_queue.settings.max_size = 2
        oldest = await offline_queue.enqueue(make_request(idempotency_key="a"))
        clock.advance(seconds=1)
        await offline_queue.enqueue(make_request(idempotency_key="b"))

        await offline_queue.enqueue(make_request(idempotency_key="c", priority=Priority.HIGH))

        remaining = [item.id for item in await offline_queue.items()]
        assert remaining == ["c", "b"]
        assert oldest.id not in remaining
        assert audit_sink.actions() == ["offline_queue.dropped"]

    @pytest.mark.asyncio
    async def test_full_queue_rejects_equal_priority(self, offline_queue, make_request) -> None:
        offline_queue.settings.max_size = 1
        await offline_queue.enqueue(make_request(idempotency_key="a"))

        with pytest.raises(OfflineQueueFullError):
            await offline_queue.enqueue(make_request(idempotency_key="b"))


class TestReplay:
    """Tests for OfflineQueue.replay."""

    @pytest.mark.asyncio
    async def test_replays_by_priority_then_age(self, offline_queue, make_request, clock) -> None:
        await offline_queue.enqueue(make_request(subject="low", priority=Priority.LOW))
        clock.advance(seconds=1)
        await offline_queue.enqueue(make_request(subject="normal"))
        clock.advance(seconds=1)
        await offline_queue.enqueue(make_request(subject="high", priority=Priority.HIGH))
        sender = RecordingSender()

        result = await offline_queue.replay(sender)

        assert [r.subject for r in sender.requests] == ["high", "normal", "low"]
        assert result.replayed == 3
        assert await offline_queue.items() == []

    @pytest.mark.asyncio
    async def test_failed_item_is_kept_for_next_replay(self, offline_queue, make_request) -> None:
        item = await offline_queue.enqueue(make_request())
        sender = RecordingSender([RateLimitDenied("Daily message limit reached (20 messages)")])

        first = await offline_queue.replay(sender)
        second = await offline_queue.replay(sender)

        assert (first.failed, first.replayed) == (1, 0)
        assert first.errors == {item.id: "Daily message limit reached (20 messages)"}
        assert second.replayed == 1

    @pytest.mark.asyncio
    async def test_item_dropped_after_replay_budget(self, offline_queue, make_request, audit_sink) -> None:
        await offline_queue.enqueue(make_request())
        sender = RecordingSender([RuntimeError("store offline")] * 5)

        results = [await offline_queue.replay(sender) for _ in range(5)]

        assert [r.failed for r in results] == [1, 1, 1, 1, 0]
        assert results[-1].dropped == 1
        assert await offline_queue.items() == []
        assert audit_sink.actions() == ["offline_queue.dropped"]
        assert "replay budget exhausted" in audit_sink.entries[0].data["reason"]

    @pytest.mark.asyncio
    async def test_old_items_are_pruned(self, offline_queue, make_request, clock) -> None:
        await offline_queue.enqueue(make_request())
        clock.advance(days=8)
        sender = RecordingSender()

        result = await offline_queue.replay(sender)

        assert result.dropped == 1
        assert sender.requests == []

    @pytest.mark.asyncio
    async def test_replay_after_partial_success_creates_no_duplicates(
        self, offline_queue, service, store, make_request
    ) -> None:
        """An item whose send went through but was not removed replays as a no-op."""
        item = await offline_queue.enqueue(make_request())
        await service.submit(SendRequest.from_payload(item.payload))

        result = await offline_queue.replay(service.submit)

        assert result.replayed == 1
        assert (await store.count_by_state())[DeliveryState.QUEUED] == 2
