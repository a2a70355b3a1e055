# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the delivery state machine and engine."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.core.notifications.delivery import (
    RETRY_CONFIGS,
    AttemptOutcome,
    DeliveryEngine,
    DeliveryEvent,
    apply_transition,
    is_retryable,
    queue_priority_for,
)
from src.core.notifications.errors import (
    ConcurrencyConflict,
    InvalidTransitionError,
    MessageLockedError,
    RecallDenied,
    TerminalDeliveryFailure,
)
from src.core.notifications.models import (
    Channel,
    DeliveryAttempt,
    DeliveryState,
    FailureCode,
    Message,
    MessageCategory,
    Priority,
    new_id,
)
from src.infrastructure.notifications.channels.base import ChannelStatus

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

ALL_ADDRESSES = {
    Channel.RICH_MESSAGING: "@alex",
    Channel.SMS: "+15550001001",
    Channel.EMAIL: "alex@example.com",
}


def _message(created_at: datetime = T0, **overrides: Any) -> Message:
    values: dict[str, Any] = {
        "id": new_id("msg"),
        "category": MessageCategory.ATTENDANCE,
        "student_id": "stu-1",
        "guardian_id": "g-1",
        "sender_id": "teacher-1",
        "subject": "Attendance Update",
        "body": "Dear Parent/Guardian,\n\nRiley was not in class today.\n\nThank you.",
        "created_at": created_at,
        "updated_at": created_at,
        "addresses": dict(ALL_ADDRESSES),
    }
    values.update(overrides)
    return Message(**values)


def _attempt(channel: Channel, success: bool = False, code: FailureCode | None = None) -> DeliveryAttempt:
    return DeliveryAttempt(
        attempt_number=1,
        channel=channel,
        started_at=T0,
        ended_at=T0,
        success=success,
        error_code=code.value if code else None,
    )


async def _submit(delivery: DeliveryEngine, clock: Any, **overrides: Any) -> Message:
    [message] = await delivery.submit([_message(created_at=clock(), **overrides)])
    return message


class TestApplyTransition:
    """Tests for the pure transition function."""

    def test_queue_from_idle(self) -> None:
        result = apply_transition(_message(), DeliveryEvent.QUEUE, T0)

        assert result.message.state is DeliveryState.QUEUED
        assert result.previous_state is DeliveryState.IDLE
        assert result.changed

    def test_does_not_mutate_input(self) -> None:
        message = _message()

        apply_transition(message, DeliveryEvent.QUEUE, T0)

        assert message.state is DeliveryState.IDLE

    def test_claim_counts_attempt_and_sets_channel(self) -> None:
        queued = apply_transition(_message(), DeliveryEvent.QUEUE, T0).message

        claimed = apply_transition(queued, DeliveryEvent.CLAIM, T0, channel=Channel.SMS).message

        assert claimed.state is DeliveryState.SENDING
        assert claimed.attempt_count == 1
        assert claimed.channel is Channel.SMS

    @pytest.mark.parametrize(
        ("state", "event"),
        [
            (DeliveryState.IDLE, DeliveryEvent.CLAIM),
            (DeliveryState.QUEUED, DeliveryEvent.SEND_SUCCEEDED),
            (DeliveryState.SENDING, DeliveryEvent.CANCEL),
            (DeliveryState.SENT, DeliveryEvent.CANCEL),
            (DeliveryState.QUEUED, DeliveryEvent.DELIVERY_CONFIRMED),
            (DeliveryState.PENDING, DeliveryEvent.CLAIM),
        ],
    )
    def test_invalid_events_raise(self, state: DeliveryState, event: DeliveryEvent) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(_message(state=state), event, T0)

    @pytest.mark.parametrize(
        ("state", "event"),
        [
            (DeliveryState.SENT, DeliveryEvent.SEND_SUCCEEDED),
            (DeliveryState.DELIVERED, DeliveryEvent.DELIVERY_CONFIRMED),
            (DeliveryState.CANCELLED, DeliveryEvent.CANCEL),
        ],
    )
    def test_redelivered_events_are_duplicates(self, state: DeliveryState, event: DeliveryEvent) -> None:
        message = _message(state=state, locked=state is DeliveryState.DELIVERED)

        result = apply_transition(message, event, T0)

        assert result.duplicate
        assert result.message is message

    def test_delivery_confirmed_locks_message(self) -> None:
        message = _message(state=DeliveryState.SENT)

        delivered = apply_transition(message, DeliveryEvent.DELIVERY_CONFIRMED, T0).message

        assert delivered.locked
        with pytest.raises(MessageLockedError):
            apply_transition(delivered, DeliveryEvent.RETRY, T0)

    def test_send_succeeded_locks_message(self) -> None:
        sending = _message(state=DeliveryState.SENDING, channel=Channel.SMS, attempt_count=1)

        sent = apply_transition(sending, DeliveryEvent.SEND_SUCCEEDED, T0).message
        delivered = apply_transition(sent, DeliveryEvent.DELIVERY_CONFIRMED, T0).message

        assert sent.locked
        assert delivered.state is DeliveryState.DELIVERED
        with pytest.raises(MessageLockedError):
            apply_transition(sent, DeliveryEvent.CANCEL, T0)

    def test_failed_message_can_be_cancelled(self) -> None:
        failed = _message(
            state=DeliveryState.FAILED,
            attempts=[_attempt(Channel.RICH_MESSAGING, code=FailureCode.PROVIDER_ERROR)],
        )

        cancelled = apply_transition(failed, DeliveryEvent.CANCEL, T0).message

        assert cancelled.state is DeliveryState.CANCELLED
        assert cancelled.locked

    def test_cancel_locks_only_after_an_attempt(self) -> None:
        fresh = _message(state=DeliveryState.QUEUED)
        tried = _message(state=DeliveryState.QUEUED, attempts=[_attempt(Channel.RICH_MESSAGING)])

        assert not apply_transition(fresh, DeliveryEvent.CANCEL, T0).message.locked
        assert apply_transition(tried, DeliveryEvent.CANCEL, T0).message.locked

    def test_retry_resets_counters_and_keeps_history(self) -> None:
        message = _message(
            state=DeliveryState.EXHAUSTED,
            attempt_count=3,
            attempts=[_attempt(c, code=FailureCode.PROVIDER_ERROR) for c in ALL_ADDRESSES],
            last_error_code="PROV_ERR",
        )

        retried = apply_transition(message, DeliveryEvent.RETRY, T0, priority=Priority.HIGH).message

        assert retried.state is DeliveryState.QUEUED
        assert retried.attempt_count == 0
        assert retried.current_attempts() == []
        assert len(retried.attempts) == 3
        assert retried.priority is Priority.HIGH
        assert retried.queue_priority == 200


class TestRetryPolicy:
    """Tests for backoff and retryable failure codes."""

    def test_normal_backoff_doubles(self) -> None:
        config = RETRY_CONFIGS[Priority.NORMAL]

        assert [config.delay_for(n).total_seconds() for n in (1, 2, 3)] == [60, 120, 240]

    def test_delay_is_capped(self) -> None:
        config = RETRY_CONFIGS[Priority.EMERGENCY]

        assert config.delay_for(30) == timedelta(seconds=1800)

    @pytest.mark.parametrize(
        ("code", "retryable"),
        [
            (FailureCode.RATE_LIMITED, True),
            (FailureCode.NETWORK_ERROR, True),
            (FailureCode.PROVIDER_ERROR, True),
            (FailureCode.TIMEOUT, True),
            (FailureCode.INVALID_ADDRESS, False),
            (FailureCode.BLOCKED, False),
            (FailureCode.UNKNOWN, False),
            ("NOT_A_CODE", False),
            (None, False),
        ],
    )
    def test_is_retryable(self, code: FailureCode | str | None, retryable: bool) -> None:
        assert is_retryable(code) is retryable

    def test_emergency_severity_outranks_priority(self) -> None:
        assert queue_priority_for(Priority.NORMAL) == 100
        assert queue_priority_for(Priority.EMERGENCY, "elevated") == 800
        assert queue_priority_for(Priority.EMERGENCY, "critical") == 1000


class TestChannelSelection:
    """Tests for select_next_channel."""

    def test_first_ranked_channel_with_address(self, delivery: DeliveryEngine) -> None:
        message = _message(addresses={Channel.EMAIL: "a@example.com", Channel.SMS: "+15550001001"})

        assert delivery.select_next_channel(message) is Channel.SMS

    def test_unattempted_channel_before_repeat(self, delivery: DeliveryEngine) -> None:
        message = _message(
            priority=Priority.HIGH,
            attempts=[_attempt(Channel.RICH_MESSAGING, code=FailureCode.PROVIDER_ERROR)],
        )

        assert delivery.select_next_channel(message) is Channel.SMS

    def test_non_retryable_channel_is_not_repeated(self, delivery: DeliveryEngine) -> None:
        message = _message(
            priority=Priority.HIGH,
            addresses={Channel.RICH_MESSAGING: "@alex", Channel.SMS: "+15550001001"},
            attempts=[
                _attempt(Channel.RICH_MESSAGING, code=FailureCode.INVALID_ADDRESS),
                _attempt(Channel.SMS, code=FailureCode.PROVIDER_ERROR),
            ],
        )

        assert delivery.select_next_channel(message) is Channel.SMS

    def test_exhausted_when_total_budget_spent(self, delivery: DeliveryEngine) -> None:
        message = _message(
            attempts=[_attempt(c, code=FailureCode.PROVIDER_ERROR) for c in ALL_ADDRESSES],
        )

        assert delivery.select_next_channel(message) is None

    def test_no_addresses_means_no_channel(self, delivery: DeliveryEngine) -> None:
        assert delivery.select_next_channel(_message(addresses={})) is None


class TestDeliveryEngine:
    """Tests for DeliveryEngine queue processing."""

    @pytest.mark.asyncio
    async def test_fallback_rich_messaging_to_sms_to_email(self, delivery, channels, clock, store) -> None:
        """Two retryable failures fall back down the channel order with backoff."""
        channels[Channel.RICH_MESSAGING].script = [ChannelStatus.FAILED]
        channels[Channel.SMS].script = [ChannelStatus.FAILED]
        channels[Channel.EMAIL].script = [ChannelStatus.DELIVERED]
        message = await _submit(delivery, clock)

        first = await delivery.process_queue()
        requeued = await store.get_message(message.id)
        assert first[AttemptOutcome.REQUEUED.value] == 1
        assert requeued.state is DeliveryState.QUEUED
        assert requeued.channel is Channel.SMS
        assert requeued.next_retry_at == T0 + timedelta(seconds=60)

        clock.advance(seconds=61)
        await delivery.process_queue()
        clock.advance(seconds=121)
        await delivery.process_queue()

        final = await store.get_message(message.id)
        assert final.state is DeliveryState.DELIVERED
        assert final.attempt_count == 3
        assert final.channel is Channel.EMAIL
        assert final.locked
        assert [a.channel for a in final.attempts] == [Channel.RICH_MESSAGING, Channel.SMS, Channel.EMAIL]
        assert [len(c.sent) for c in channels.values()] == [1, 1, 1]

    @pytest.mark.asyncio
    async def test_backoff_is_respected(self, delivery, channels, clock) -> None:
        channels[Channel.RICH_MESSAGING].script = [ChannelStatus.FAILED]
        await _submit(delivery, clock)

        await delivery.process_queue()
        clock.advance(seconds=30)
        stats = await delivery.process_queue()

        assert sum(stats.values()) == 0
        assert channels[Channel.SMS].sent == []

    @pytest.mark.asyncio
    async def test_successful_send_stops_at_sent(self, delivery, channels, clock, store) -> None:
        message = await _submit(delivery, clock)

        stats = await delivery.process_queue()

        stored = await store.get_message(message.id)
        assert stats[AttemptOutcome.SENT.value] == 1
        assert stored.state is DeliveryState.SENT
        assert stored.sent_at == T0
        assert stored.attempts[0].provider_message_id == "rich_messaging-1"
        assert channels[Channel.RICH_MESSAGING].sent[0].address == "@alex"

    @pytest.mark.asyncio
    async def test_all_channels_failing_exhausts(self, delivery, channels, clock, store) -> None:
        for channel in channels.values():
            channel.default = ChannelStatus.FAILED
        message = await _submit(delivery, clock)

        await delivery.process_queue()
        clock.advance(seconds=61)
        await delivery.process_queue()
        clock.advance(seconds=121)
        stats = await delivery.process_queue()

        stored = await store.get_message(message.id)
        assert stats[AttemptOutcome.EXHAUSTED.value] == 1
        assert stored.state is DeliveryState.EXHAUSTED
        assert stored.last_error_code == "PROV_ERR"
        assert (await delivery.queue_stats())["requires_attention"] == 1

    @pytest.mark.asyncio
    async def test_timeout_is_recorded_as_retryable_failure(self, delivery, channels, clock, store) -> None:
        channels[Channel.RICH_MESSAGING].script = [asyncio.TimeoutError()]
        message = await _submit(delivery, clock)

        await delivery.process_queue()

        stored = await store.get_message(message.id)
        assert stored.state is DeliveryState.QUEUED
        assert stored.last_error_code == "TIMEOUT"
        assert stored.attempts[0].error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_slow_channel_times_out(self, delivery, channels, clock, store) -> None:
        async def never_answers(payload):
            await asyncio.sleep(10)

        channels[Channel.RICH_MESSAGING].send = never_answers
        delivery.settings.channel_timeout_seconds = 0.01
        message = await _submit(delivery, clock)

        await delivery.process_queue()

        stored = await store.get_message(message.id)
        assert stored.last_error_code == "TIMEOUT"
        assert stored.channel is Channel.SMS

    @pytest.mark.asyncio
    async def test_channel_exception_maps_to_unknown(self, delivery, channels, clock, store) -> None:
        channels[Channel.RICH_MESSAGING].script = [RuntimeError("provider exploded")]
        message = await _submit(delivery, clock)

        outcome = await delivery.process_queue()

        stored = await store.get_message(message.id)
        assert outcome[AttemptOutcome.REQUEUED.value] == 1
        assert stored.attempts[0].error_code == "UNKNOWN"
        assert stored.attempts[0].error_message == "provider exploded"

    @pytest.mark.asyncio
    async def test_skipped_channel_counts_as_failure(self, delivery, channels, clock, store) -> None:
        channels[Channel.RICH_MESSAGING].script = [ChannelStatus.SKIPPED]
        message = await _submit(delivery, clock)

        await delivery.process_queue()

        stored = await store.get_message(message.id)
        assert not stored.attempts[0].success
        assert stored.attempts[0].error_code == "CH_UNAVAIL"
        assert stored.channel is Channel.SMS

    @pytest.mark.asyncio
    async def test_missing_sender_counts_as_unavailable(self, store, settings, clock) -> None:
        engine = DeliveryEngine(store, {}, settings.delivery, clock=clock)
        [message] = await engine.submit([_message(addresses={Channel.SMS: "+15550001001"})])

        stats = await engine.process_queue()

        stored = await store.get_message(message.id)
        assert stats[AttemptOutcome.EXHAUSTED.value] == 1
        assert stored.last_error_code == "CH_UNAVAIL"

    @pytest.mark.asyncio
    async def test_message_without_addresses_is_exhausted(self, delivery, clock, store) -> None:
        message = await _submit(delivery, clock, addresses={})

        stats = await delivery.process_queue()

        stored = await store.get_message(message.id)
        assert stats[AttemptOutcome.EXHAUSTED.value] == 1
        assert stored.last_error_code == "NO_CHANNEL"
        assert stored.attempts == []

    @pytest.mark.asyncio
    async def test_stale_copy_loses_claim_race(self, delivery, channels, clock, store) -> None:
        """Only one of two workers holding the same queued copy sends."""
        message = await _submit(delivery, clock)
        first = await store.get_message(message.id)
        second = await store.get_message(message.id)

        outcomes = [await delivery.attempt_delivery(first), await delivery.attempt_delivery(second)]

        assert outcomes == [AttemptOutcome.SENT, AttemptOutcome.SKIPPED]
        assert len(channels[Channel.RICH_MESSAGING].sent) == 1

    @pytest.mark.asyncio
    async def test_abandoned_send_is_recovered_as_timeout(self, delivery, channels, clock, store) -> None:
        """A claim whose worker never reports back falls back like a timeout."""
        message = await _submit(delivery, clock)
        queued = await store.get_message(message.id)
        await delivery.transition(queued, DeliveryEvent.CLAIM, channel=Channel.RICH_MESSAGING)

        clock.advance(seconds=60)
        early = await delivery.recover_stale_sends()
        clock.advance(seconds=31)
        stats = await delivery.recover_stale_sends()

        recovered = await store.get_message(message.id)
        assert sum(early.values()) == 0
        assert stats[AttemptOutcome.REQUEUED.value] == 1
        assert recovered.state is DeliveryState.QUEUED
        assert recovered.channel is Channel.SMS
        assert recovered.last_error_code == "TIMEOUT"
        assert recovered.attempts[-1].error_code == "TIMEOUT"

        clock.advance(seconds=61)
        await delivery.process_queue()

        assert (await store.get_message(message.id)).state is DeliveryState.SENT
        assert len(channels[Channel.SMS].sent) == 1
        assert channels[Channel.RICH_MESSAGING].sent == []

    @pytest.mark.asyncio
    async def test_late_result_after_recovery_is_dropped(self, delivery, channels, clock, store) -> None:
        async def slow_send(payload):
            clock.advance(seconds=120)
            await delivery.recover_stale_sends()
            return channels[Channel.SMS].create_success_result(provider_message_id="late-1")

        channels[Channel.RICH_MESSAGING].send = slow_send
        message = await _submit(delivery, clock)

        outcome = await delivery.attempt_delivery(await store.get_message(message.id))

        stored = await store.get_message(message.id)
        assert outcome is AttemptOutcome.SKIPPED
        assert stored.state is DeliveryState.QUEUED
        assert stored.last_error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_failure_left_unhandled_is_requeued(self, delivery, clock, store) -> None:
        message = await _submit(delivery, clock)
        claimed = (
            await delivery.transition(
                await store.get_message(message.id), DeliveryEvent.CLAIM, channel=Channel.RICH_MESSAGING
            )
        ).message
        await delivery.transition(
            claimed,
            DeliveryEvent.SEND_FAILED,
            attempt=_attempt(Channel.RICH_MESSAGING, code=FailureCode.NETWORK_ERROR),
            error_code=FailureCode.NETWORK_ERROR,
        )
        clock.advance(minutes=5)

        stats = await delivery.recover_stale_sends()

        stored = await store.get_message(message.id)
        assert stats[AttemptOutcome.REQUEUED.value] == 1
        assert stored.state is DeliveryState.QUEUED
        assert stored.last_error_code == "NET_ERR"

    @pytest.mark.asyncio
    async def test_queue_orders_by_priority(self, delivery, channels, clock) -> None:
        await _submit(delivery, clock, subject="low", priority=Priority.LOW, queue_priority=50)
        await _submit(delivery, clock, subject="high", priority=Priority.HIGH, queue_priority=200)
        delivery.settings.max_concurrent_sends = 1

        await delivery.process_queue()

        assert [p.subject for p in channels[Channel.RICH_MESSAGING].sent] == ["high", "low"]

    @pytest.mark.asyncio
    async def test_transitions_publish_and_audit(self, delivery, clock, recorder, audit_sink) -> None:
        await _submit(delivery, clock)

        await delivery.process_queue()

        assert recorder.types() == ["message.queued", "message.sending", "message.sent"]
        assert audit_sink.actions() == ["message.queue", "message.claim", "message.send_succeeded"]


class TestManualOperations:
    """Tests for confirm, recall, retry, approve and reject."""

    @pytest.mark.asyncio
    async def test_confirm_delivery_is_idempotent(self, delivery, clock) -> None:
        message = await _submit(delivery, clock)
        await delivery.process_queue()

        first = await delivery.confirm_delivery(message.id)
        second = await delivery.confirm_delivery(message.id)

        assert first.message.state is DeliveryState.DELIVERED
        assert not first.duplicate
        assert second.duplicate

    @pytest.mark.asyncio
    async def test_confirm_exhausted_message_raises(self, delivery, clock) -> None:
        message = await _submit(delivery, clock, addresses={})
        await delivery.process_queue()

        with pytest.raises(TerminalDeliveryFailure):
            await delivery.confirm_delivery(message.id)

    @pytest.mark.asyncio
    async def test_recall_within_window(self, delivery, clock) -> None:
        message = await _submit(delivery, clock)
        clock.advance(minutes=2)

        recalled = await delivery.recall(message.id, actor_id="teacher-1")

        assert recalled.state is DeliveryState.CANCELLED
        assert recalled.cancelled_at == T0 + timedelta(minutes=2)
        assert not recalled.locked

    @pytest.mark.asyncio
    async def test_recall_after_send_is_denied(self, delivery, clock, store) -> None:
        message = await _submit(delivery, clock)
        await delivery.process_queue()
        clock.advance(minutes=10)

        with pytest.raises(RecallDenied, match="cannot recall: message is already sent"):
            await delivery.recall(message.id)

        assert (await store.get_message(message.id)).state is DeliveryState.SENT

    @pytest.mark.asyncio
    async def test_recall_after_window_is_denied(self, delivery, clock) -> None:
        message = await _submit(delivery, clock)
        clock.advance(minutes=6)

        with pytest.raises(RecallDenied, match="recall window has passed") as exc_info:
            await delivery.recall(message.id)

        assert exc_info.value.code == "cannot_recall"

    @pytest.mark.asyncio
    async def test_recall_racing_a_claim_leaves_the_send_alone(
        self, delivery, clock, store, monkeypatch
    ) -> None:
        """A recall working from a copy read before a worker's claim conflicts."""
        message = await _submit(delivery, clock)
        before_claim = await store.get_message(message.id)
        await delivery.transition(
            await store.get_message(message.id), DeliveryEvent.CLAIM, channel=Channel.RICH_MESSAGING
        )
        monkeypatch.setattr(store, "get_message", AsyncMock(return_value=before_claim))

        with pytest.raises(ConcurrencyConflict):
            await delivery.recall(message.id, actor_id="teacher-1")

        monkeypatch.undo()
        stored = await store.get_message(message.id)
        assert stored.state is DeliveryState.SENDING
        assert stored.cancelled_at is None

    @pytest.mark.asyncio
    async def test_manual_retry_after_exhaustion(self, delivery, channels, clock) -> None:
        for channel in channels.values():
            channel.default = ChannelStatus.FAILED
        message = await _submit(delivery, clock)
        for seconds in (0, 61, 121):
            clock.advance(seconds=seconds)
            await delivery.process_queue()
        for channel in channels.values():
            channel.default = ChannelStatus.SENT

        retried = await delivery.retry(message.id, priority=Priority.HIGH, actor_id="admin-1")
        await delivery.process_queue()
        status = await delivery.get_status(message.id)

        assert retried.state is DeliveryState.QUEUED
        assert retried.attempt_count == 0
        assert status.state is DeliveryState.SENT
        assert status.channel is Channel.RICH_MESSAGING
        assert status.attempts == 1

    @pytest.mark.asyncio
    async def test_cancelled_message_with_attempts_is_locked(self, delivery, channels, clock) -> None:
        channels[Channel.RICH_MESSAGING].script = [ChannelStatus.FAILED]
        message = await _submit(delivery, clock)
        await delivery.process_queue()

        cancelled = (await delivery.cancel(message.id)).message

        assert cancelled.locked
        with pytest.raises(MessageLockedError):
            await delivery.retry(message.id)

    @pytest.mark.asyncio
    async def test_review_then_approve_or_reject(self, delivery, clock) -> None:
        first, second = await delivery.submit(
            [_message(created_at=clock()), _message(created_at=clock())], review=True
        )
        assert first.state is DeliveryState.PENDING

        approved = await delivery.approve(first.id, actor_id="admin-1")
        rejected = await delivery.reject(second.id, actor_id="admin-1")
        again = await delivery.reject(second.id, actor_id="admin-1")

        assert approved.state is DeliveryState.QUEUED
        assert rejected.state is DeliveryState.CANCELLED
        assert rejected.rejected_at == T0
        assert again.state is DeliveryState.CANCELLED

    @pytest.mark.asyncio
    async def test_queue_stats(self, delivery, clock) -> None:
        await _submit(delivery, clock)
        await _submit(delivery, clock)

        stats = await delivery.queue_stats()

        assert stats["by_state"]["queued"] == 2
        assert stats["ready"] == 2
        assert stats["requires_attention"] == 0
