# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Delivery state machine with channel fallback and backoff.

Each message moves through::

    idle -> queued -> sending -> sent -> delivered
                         |
                         +-> failed -> queued (next channel, after backoff)
                                    -> exhausted

``pending`` holds flagged messages until an admin approves or rejects
them, and ``cancelled`` is reachable from idle, pending and queued, and
from failed once the message's emergency has closed.

``apply_transition`` is total over (state, event): it returns the new
message, reports a duplicate event explicitly, or raises
InvalidTransitionError. ``DeliveryEngine`` persists every transition
through the store with a version check, publishes ``message.<state>``
on the event bus and writes an audit entry.

A worker claims a message (queued -> sending) with a conditional write
before calling the channel, so at most one send is in flight per message.
"""

import asyncio
import logging
from copy import deepcopy
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from src.core.config.settings import DeliverySettings
from src.core.notifications.errors import (
    ConcurrencyConflict,
    InvalidTransitionError,
    MessageLockedError,
    MessageNotFoundError,
    RecallDenied,
    TerminalDeliveryFailure,
    TransientDeliveryFailure,
)
from src.core.notifications.models import (
    EMERGENCY_PRIORITY,
    PRIORITY_SCORE,
    RECALLABLE_STATES,
    Channel,
    DeliveryAttempt,
    DeliveryState,
    FailureCode,
    Message,
    MessageStatus,
    Priority,
)
from src.infrastructure.audit import AuditLogger
from src.infrastructure.events import EventBus, EventTypes
from src.infrastructure.notifications.channels.base import (
    BaseChannel,
    ChannelResult,
    ChannelStatus,
    NotificationPayload,
)
from src.infrastructure.storage.base import NotificationStore
from src.utils.datetime import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class DeliveryEvent(str, Enum):
    QUEUE = "queue"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE = "approve"
    REJECT = "reject"
    CLAIM = "claim"
    SEND_SUCCEEDED = "send_succeeded"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    SEND_FAILED = "send_failed"
    REQUEUE = "requeue"
    EXHAUST = "exhaust"
    RETRY = "retry"
    CANCEL = "cancel"


_S = DeliveryState
_E = DeliveryEvent

TRANSITIONS: dict[tuple[DeliveryState, DeliveryEvent], DeliveryState] = {
    (_S.IDLE, _E.QUEUE): _S.QUEUED,
    (_S.IDLE, _E.SUBMIT_FOR_REVIEW): _S.PENDING,
    (_S.IDLE, _E.CANCEL): _S.CANCELLED,
    (_S.PENDING, _E.APPROVE): _S.QUEUED,
    (_S.PENDING, _E.REJECT): _S.CANCELLED,
    (_S.PENDING, _E.CANCEL): _S.CANCELLED,
    (_S.QUEUED, _E.CLAIM): _S.SENDING,
    (_S.QUEUED, _E.CANCEL): _S.CANCELLED,
    (_S.QUEUED, _E.EXHAUST): _S.EXHAUSTED,
    (_S.QUEUED, _E.RETRY): _S.QUEUED,
    (_S.SENDING, _E.SEND_SUCCEEDED): _S.SENT,
    (_S.SENDING, _E.SEND_FAILED): _S.FAILED,
    (_S.SENT, _E.DELIVERY_CONFIRMED): _S.DELIVERED,
    (_S.FAILED, _E.REQUEUE): _S.QUEUED,
    (_S.FAILED, _E.EXHAUST): _S.EXHAUSTED,
    (_S.FAILED, _E.RETRY): _S.QUEUED,
    (_S.FAILED, _E.CANCEL): _S.CANCELLED,
    (_S.EXHAUSTED, _E.RETRY): _S.QUEUED,
}

# Re-delivered events that already took effect.
DUPLICATE_EVENTS: frozenset[tuple[DeliveryState, DeliveryEvent]] = frozenset(
    {
        (_S.SENT, _E.SEND_SUCCEEDED),
        (_S.DELIVERED, _E.SEND_SUCCEEDED),
        (_S.DELIVERED, _E.DELIVERY_CONFIRMED),
        (_S.CANCELLED, _E.CANCEL),
        (_S.CANCELLED, _E.REJECT),
    }
)


@dataclass(frozen=True)
class RetryConfig:
    """Attempt budget and backoff of one priority.

    Attributes:
        max_attempts_per_channel: Tries allowed on any single channel.
        max_total_attempts: Tries allowed across all channels.
        base_delay_seconds: Delay after the first failed attempt.
        multiplier: Growth factor per further attempt.
        max_delay_seconds: Upper bound of any delay.
    """

    max_attempts_per_channel: int
    max_total_attempts: int
    base_delay_seconds: float
    multiplier: float
    max_delay_seconds: float

    def delay_for(self, attempt: int) -> timedelta:
        """Backoff after the ``attempt``-th try (1-based)."""
        seconds = self.base_delay_seconds * self.multiplier ** max(attempt - 1, 0)
        return timedelta(seconds=min(seconds, self.max_delay_seconds))


RETRY_CONFIGS: dict[Priority, RetryConfig] = {
    Priority.EMERGENCY: RetryConfig(3, 8, 30, 1.5, 1800),
    Priority.HIGH: RetryConfig(2, 6, 45, 2, 2700),
    Priority.NORMAL: RetryConfig(1, 3, 60, 2, 3600),
    Priority.LOW: RetryConfig(1, 3, 120, 2.5, 7200),
}


@dataclass(frozen=True)
class FailureReason:
    code: FailureCode
    description: str
    retryable: bool


FAILURE_REASONS: dict[FailureCode, FailureReason] = {
    reason.code: reason
    for reason in (
        FailureReason(FailureCode.CHANNEL_UNAVAILABLE, "Channel temporarily unavailable", False),
        FailureReason(FailureCode.RATE_LIMITED, "Provider rate limit reached", True),
        FailureReason(FailureCode.INVALID_ADDRESS, "Invalid recipient address", False),
        FailureReason(FailureCode.NETWORK_ERROR, "Network connectivity issue", True),
        FailureReason(FailureCode.PROVIDER_ERROR, "Provider service error", True),
        FailureReason(FailureCode.TIMEOUT, "Delivery timed out", True),
        FailureReason(FailureCode.REJECTED, "Message rejected by recipient", False),
        FailureReason(FailureCode.BLOCKED, "Sender blocked by provider", False),
        FailureReason(FailureCode.UNKNOWN, "Unknown error", False),
        FailureReason(FailureCode.NO_CHANNEL, "No channel address available", False),
    )
}


def is_retryable(code: FailureCode | str | None) -> bool:
    if code is None:
        return False
    try:
        return FAILURE_REASONS[FailureCode(code)].retryable
    except ValueError:
        return False


def retry_config_for(priority: Priority) -> RetryConfig:
    return RETRY_CONFIGS[priority]


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of applying one event to one message."""

    message: Message
    previous_state: DeliveryState
    event: DeliveryEvent
    duplicate: bool = False

    @property
    def changed(self) -> bool:
        return not self.duplicate


def apply_transition(
    message: Message,
    event: DeliveryEvent,
    now: datetime,
    *,
    channel: Channel | None = None,
    next_retry_at: datetime | None = None,
    error_code: FailureCode | str | None = None,
    attempt: DeliveryAttempt | None = None,
    priority: Priority | None = None,
) -> TransitionResult:
    """Apply ``event`` to a copy of ``message``.

    Raises:
        MessageLockedError: The message is locked and the event is not a duplicate.
        InvalidTransitionError: The event is not valid in the current state.
    """
    state = message.state
    if (state, event) in DUPLICATE_EVENTS:
        return TransitionResult(message, state, event, duplicate=True)
    if message.locked and (state, event) != (DeliveryState.SENT, DeliveryEvent.DELIVERY_CONFIRMED):
        raise MessageLockedError(message.id, state.value, event.value)

    target = TRANSITIONS.get((state, event))
    if target is None:
        raise InvalidTransitionError("message", state.value, event.value)

    updated = deepcopy(message)
    updated.state = target
    updated.updated_at = now

    if attempt is not None:
        updated.attempts.append(attempt)

    if event is DeliveryEvent.CLAIM:
        updated.channel = channel or updated.channel
        updated.attempt_count += 1
        updated.next_retry_at = None
    elif event is DeliveryEvent.SEND_SUCCEEDED:
        updated.sent_at = now
        updated.last_error_code = None
        updated.locked = True
    elif event is DeliveryEvent.DELIVERY_CONFIRMED:
        updated.delivered_at = now
        updated.locked = True
    elif event is DeliveryEvent.SEND_FAILED:
        updated.last_error_code = _code_value(error_code) or FailureCode.UNKNOWN.value
    elif event is DeliveryEvent.REQUEUE:
        updated.channel = channel or updated.channel
        updated.next_retry_at = next_retry_at
    elif event is DeliveryEvent.EXHAUST:
        updated.next_retry_at = None
        if error_code is not None:
            updated.last_error_code = _code_value(error_code)
    elif event is DeliveryEvent.RETRY:
        updated.attempt_count = 0
        updated.attempt_offset = len(updated.attempts)
        updated.next_retry_at = None
        updated.last_error_code = None
        updated.channel = None
        if priority is not None:
            updated.priority = priority
            if updated.emergency_id is None:
                updated.queue_priority = PRIORITY_SCORE[priority]
            else:
                updated.queue_priority = max(updated.queue_priority, PRIORITY_SCORE[priority])
    elif event in (DeliveryEvent.CANCEL, DeliveryEvent.REJECT):
        updated.cancelled_at = now
        updated.next_retry_at = None
        if event is DeliveryEvent.REJECT:
            updated.rejected_at = now
        updated.locked = bool(updated.attempts)
    elif event is DeliveryEvent.QUEUE:
        updated.next_retry_at = next_retry_at

    return TransitionResult(updated, state, event)


def _code_value(code: FailureCode | str | None) -> str | None:
    if code is None:
        return None
    return code.value if isinstance(code, FailureCode) else str(code)


class AttemptOutcome(str, Enum):
    """What one ``attempt_delivery`` call did."""

    SENT = "sent"
    DELIVERED = "delivered"
    REQUEUED = "requeued"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class DeliveryEngine:
    """Drives messages through the delivery state machine.

    Attributes:
        settings: Delivery settings (channel order, timeouts, batch size).
    """

    def __init__(
        self,
        store: NotificationStore,
        channels: dict[Channel, BaseChannel],
        settings: DeliverySettings,
        event_bus: EventBus | None = None,
        audit: AuditLogger | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._channels = channels
        self.settings = settings
        self._event_bus = event_bus
        self._audit = audit
        self._clock = clock
        self._order = [Channel(name) for name in settings.channel_order]

    @property
    def channel_order(self) -> list[Channel]:
        return list(self._order)

    # State machine plumbing

    async def transition(
        self,
        message: Message,
        event: DeliveryEvent,
        actor_id: str | None = None,
        **changes: Any,
    ) -> TransitionResult:
        """Apply an event and persist it conditionally on ``message.version``.

        Raises:
            ConcurrencyConflict: The message changed since it was read.
            InvalidTransitionError: The event is not valid in the current state.
        """
        result = apply_transition(message, event, self._clock(), **changes)
        if result.duplicate:
            logger.debug(
                "Duplicate %s for message %s in state %s ignored",
                event.value,
                message.id,
                message.state.value,
            )
            return result

        stored = await self._store.update_message(result.message)
        result = replace(result, message=stored)
        await self._after_transition(result, actor_id)
        return result

    async def _after_transition(self, result: TransitionResult, actor_id: str | None) -> None:
        message = result.message
        payload = {
            "message_id": message.id,
            "event": result.event.value,
            "previous_state": result.previous_state.value,
            "state": message.state.value,
            "channel": message.channel.value if message.channel else None,
            "attempt_count": message.attempt_count,
            "error_code": message.last_error_code,
            "emergency_id": message.emergency_id,
            "guardian_id": message.guardian_id,
        }
        logger.debug(
            "Message %s: %s -> %s (%s)",
            message.id,
            result.previous_state.value,
            message.state.value,
            result.event.value,
        )
        if self._event_bus is not None:
            await self._event_bus.publish(EventTypes.Message.for_state(message.state), payload)
        if self._audit is not None:
            await self._audit.record(
                f"message.{result.event.value}",
                entity_type="message",
                entity_id=message.id,
                actor_id=actor_id,
                data=payload,
            )

    async def submit(self, messages: list[Message], review: bool = False) -> list[Message]:
        """Persist new idle messages as queued, or as pending when review is required.

        Raises:
            ConcurrencyConflict: The idempotency key is already in use.
        """
        now = self._clock()
        event = DeliveryEvent.SUBMIT_FOR_REVIEW if review else DeliveryEvent.QUEUE
        results = [apply_transition(m, event, now) for m in messages]
        stored = await self._store.create_messages([r.message for r in results])
        for result, message in zip(results, stored):
            await self._after_transition(replace(result, message=message), message.sender_id)
        return stored

    async def _get(self, message_id: str) -> Message:
        message = await self._store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    # Channel selection

    def eligible_channels(self, message: Message) -> list[Channel]:
        """Channels the message has an address for, in rank order."""
        return [c for c in self._order if message.addresses.get(c)]

    def select_next_channel(self, message: Message, config: RetryConfig | None = None) -> Channel | None:
        """Pick the channel for the next attempt, or None when exhausted.

        An unattempted channel wins in rank order; otherwise the highest
        ranked channel that is under its per-channel cap and has not
        failed with a non-retryable code.
        """
        config = config or retry_config_for(message.priority)
        attempts = message.current_attempts()
        if len(attempts) >= config.max_total_attempts:
            return None

        candidates = self.eligible_channels(message)
        attempted = message.attempted_channels()
        for channel in candidates:
            if channel not in attempted:
                return channel

        dead = {
            a.channel
            for a in attempts
            if not a.success and not is_retryable(a.error_code)
        }
        for channel in candidates:
            if channel not in dead and message.attempts_on(channel) < config.max_attempts_per_channel:
                return channel
        return None

    # Queue processing

    async def process_queue(self) -> dict[str, int]:
        """Attempt delivery of every ready message, up to the batch size.

        Returns:
            Count of messages per AttemptOutcome value.
        """
        ready = await self._store.list_ready_messages(self._clock(), self.settings.queue_batch_size)
        stats = {outcome.value: 0 for outcome in AttemptOutcome}
        if not ready:
            return stats

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_sends)

        async def run(message: Message) -> AttemptOutcome:
            async with semaphore:
                return await self.attempt_delivery(message)

        for outcome in await asyncio.gather(*(run(m) for m in ready)):
            stats[outcome.value] += 1

        logger.info("Processed %d queued messages: %s", len(ready), stats)
        return stats

    async def attempt_delivery(self, message: Message) -> AttemptOutcome:
        """Claim a queued message and try one channel.

        A lost claim race or a message that is not ready is skipped. A
        message whose emergency has been resolved or cancelled is
        cancelled instead of claimed or requeued.
        """
        now = self._clock()
        if message.state is not DeliveryState.QUEUED:
            return AttemptOutcome.SKIPPED
        if message.next_retry_at is not None and ensure_utc(message.next_retry_at) > now:
            return AttemptOutcome.SKIPPED
        if await self._emergency_closed(message):
            return await self._cancel_for_closed_emergency(message)

        config = retry_config_for(message.priority)
        channel = self.select_next_channel(message, config)
        if channel is None:
            code = FailureCode.NO_CHANNEL if not self.eligible_channels(message) else message.last_error_code
            try:
                await self.transition(message, DeliveryEvent.EXHAUST, error_code=code)
            except ConcurrencyConflict:
                return AttemptOutcome.SKIPPED
            logger.warning("Message %s exhausted before sending (%s)", message.id, code)
            return AttemptOutcome.EXHAUSTED

        try:
            claimed = (await self.transition(message, DeliveryEvent.CLAIM, channel=channel)).message
        except ConcurrencyConflict:
            logger.debug("Message %s already claimed by another worker", message.id)
            return AttemptOutcome.SKIPPED

        result, attempt = await self._send(claimed, channel)

        try:
            if result.success:
                sent = await self.transition(claimed, DeliveryEvent.SEND_SUCCEEDED, attempt=attempt)
                if result.delivered:
                    await self.transition(sent.message, DeliveryEvent.DELIVERY_CONFIRMED)
                    return AttemptOutcome.DELIVERED
                return AttemptOutcome.SENT

            code = result.error_code or FailureCode.UNKNOWN
            failed = (
                await self.transition(claimed, DeliveryEvent.SEND_FAILED, attempt=attempt, error_code=code)
            ).message
        except ConcurrencyConflict:
            # The stale send recovery already failed this attempt over.
            logger.warning("Message %s changed while its send was in flight", claimed.id)
            return AttemptOutcome.SKIPPED

        return await self._after_failure(failed, code, config)

    async def _after_failure(
        self,
        failed: Message,
        code: FailureCode | str | None,
        config: RetryConfig,
    ) -> AttemptOutcome:
        """Requeue on the next channel after backoff, or exhaust."""
        if await self._emergency_closed(failed):
            return await self._cancel_for_closed_emergency(failed)

        try:
            next_channel = self.select_next_channel(failed, config)
            if next_channel is None:
                await self.transition(failed, DeliveryEvent.EXHAUST, error_code=code)
                logger.warning(
                    "Message %s exhausted after %d attempts (last error %s)",
                    failed.id,
                    failed.attempt_count,
                    _code_value(code),
                )
                return AttemptOutcome.EXHAUSTED

            retry_at = self._clock() + config.delay_for(failed.attempt_count)
            await self.transition(
                failed,
                DeliveryEvent.REQUEUE,
                channel=next_channel,
                next_retry_at=retry_at,
            )
        except ConcurrencyConflict:
            logger.debug("Message %s changed before its failure was handled", failed.id)
            return AttemptOutcome.SKIPPED
        return AttemptOutcome.REQUEUED

    async def _emergency_closed(self, message: Message) -> bool:
        if message.emergency_id is None:
            return False
        emergency = await self._store.get_emergency(message.emergency_id)
        return emergency is not None and emergency.is_terminal

    async def _cancel_for_closed_emergency(self, message: Message) -> AttemptOutcome:
        try:
            await self.transition(message, DeliveryEvent.CANCEL)
        except (ConcurrencyConflict, InvalidTransitionError, MessageLockedError) as e:
            logger.debug("Message %s of a closed emergency not cancelled: %s", message.id, e)
            return AttemptOutcome.SKIPPED
        logger.info("Message %s cancelled; emergency %s is closed", message.id, message.emergency_id)
        return AttemptOutcome.CANCELLED

    async def recover_stale_sends(self) -> dict[str, int]:
        """Treat sends whose worker never reported back as timed out.

        A message left ``sending`` (or ``failed``) for longer than the
        channel timeout plus ``stale_send_margin_seconds`` gets a TIMEOUT
        attempt and then the normal fallback: requeue, exhaust, or cancel
        when its emergency has closed.

        Returns:
            Count of messages per AttemptOutcome value.
        """
        cutoff = self._clock() - timedelta(
            seconds=self.settings.channel_timeout_seconds + self.settings.stale_send_margin_seconds
        )
        stale = await self._store.list_stale_messages(
            [DeliveryState.SENDING, DeliveryState.FAILED],
            cutoff,
            self.settings.queue_batch_size,
        )
        stats = {outcome.value: 0 for outcome in AttemptOutcome}
        for message in stale:
            stats[(await self._recover(message)).value] += 1

        if stale:
            logger.warning("Recovered %d stale sends: %s", len(stale), stats)
        return stats

    async def _recover(self, message: Message) -> AttemptOutcome:
        config = retry_config_for(message.priority)
        if message.state is DeliveryState.FAILED:
            return await self._after_failure(message, message.last_error_code, config)

        now = self._clock()
        attempt = DeliveryAttempt(
            attempt_number=len(message.attempts) + 1,
            channel=message.channel,
            started_at=message.updated_at,
            ended_at=now,
            error_code=FailureCode.TIMEOUT.value,
            error_message="Send did not report back",
        )
        try:
            failed = (
                await self.transition(
                    message,
                    DeliveryEvent.SEND_FAILED,
                    attempt=attempt,
                    error_code=FailureCode.TIMEOUT,
                )
            ).message
        except ConcurrencyConflict:
            return AttemptOutcome.SKIPPED
        return await self._after_failure(failed, FailureCode.TIMEOUT, config)

    async def _send(self, message: Message, channel: Channel) -> tuple[ChannelResult, DeliveryAttempt]:
        started = self._clock()
        sender = self._channels.get(channel)

        if sender is None:
            result = ChannelResult(
                channel=channel,
                status=ChannelStatus.FAILED,
                error_code=FailureCode.CHANNEL_UNAVAILABLE,
                error_message=f"No sender configured for {channel.value}",
            )
        else:
            payload = NotificationPayload.from_message(message, channel)
            try:
                result = await asyncio.wait_for(
                    sender.send(payload),
                    timeout=self.settings.channel_timeout_seconds,
                )
            except asyncio.TimeoutError:
                result = ChannelResult(
                    channel=channel,
                    status=ChannelStatus.FAILED,
                    error_code=FailureCode.TIMEOUT,
                    error_message=f"No response within {self.settings.channel_timeout_seconds}s",
                )
            except TransientDeliveryFailure as e:
                result = ChannelResult(
                    channel=channel,
                    status=ChannelStatus.FAILED,
                    error_code=_as_failure_code(e.error_code),
                    error_message=e.message,
                )
            except Exception as e:
                logger.error(
                    "Channel %s raised while sending message %s: %s",
                    channel.value,
                    message.id,
                    str(e),
                    exc_info=True,
                )
                result = ChannelResult(
                    channel=channel,
                    status=ChannelStatus.FAILED,
                    error_code=FailureCode.UNKNOWN,
                    error_message=str(e),
                )

        if result.status is ChannelStatus.SKIPPED:
            result = replace(
                result,
                status=ChannelStatus.FAILED,
                error_code=result.error_code or FailureCode.CHANNEL_UNAVAILABLE,
            )

        ended = self._clock()
        attempt = DeliveryAttempt(
            attempt_number=len(message.attempts) + 1,
            channel=channel,
            started_at=started,
            ended_at=ended,
            success=result.success,
            error_code=result.error_code.value if result.error_code else None,
            error_message=result.error_message,
            latency_ms=int((ended - started).total_seconds() * 1000),
            provider_message_id=result.provider_message_id,
        )
        return result, attempt

    # Manual and external operations

    async def confirm_delivery(self, message_id: str) -> TransitionResult:
        """Record a provider delivery receipt. Duplicate receipts are recognized.

        Raises:
            TerminalDeliveryFailure: The message is exhausted.
        """
        message = await self._get(message_id)
        if message.state is DeliveryState.EXHAUSTED:
            raise TerminalDeliveryFailure(message_id)
        return await self.transition(message, DeliveryEvent.DELIVERY_CONFIRMED)

    async def recall(self, message_id: str, actor_id: str | None = None) -> Message:
        """Cancel a message that has not been sent, within the recall window.

        Raises:
            RecallDenied: Sending has started or the window has passed.
            ConcurrencyConflict: A worker claimed the message concurrently.
        """
        message = await self._get(message_id)
        now = self._clock()

        if message.state not in RECALLABLE_STATES:
            raise RecallDenied(
                f"cannot recall: message is already {message.state.value}",
                message_id=message_id,
                state=message.state.value,
            )

        window = timedelta(minutes=self.settings.recall_window_minutes)
        if now - ensure_utc(message.created_at) > window:
            raise RecallDenied(
                f"cannot recall: the {self.settings.recall_window_minutes} minute recall window has passed",
                message_id=message_id,
                state=message.state.value,
            )

        result = await self.transition(message, DeliveryEvent.CANCEL, actor_id)
        logger.info("Message %s recalled by %s", message_id, actor_id)
        return result.message

    async def cancel(self, message_id: str, actor_id: str | None = None) -> TransitionResult:
        """Cancel without a recall window check (used when draining emergencies)."""
        message = await self._get(message_id)
        return await self.transition(message, DeliveryEvent.CANCEL, actor_id)

    async def retry(
        self,
        message_id: str,
        priority: Priority | None = None,
        actor_id: str | None = None,
    ) -> Message:
        """Reset attempt counters and requeue immediately, optionally at a new priority."""
        message = await self._get(message_id)
        result = await self.transition(message, DeliveryEvent.RETRY, actor_id, priority=priority)
        logger.info("Message %s manually retried by %s", message_id, actor_id)
        return result.message

    async def approve(self, message_id: str, actor_id: str | None = None) -> Message:
        message = await self._get(message_id)
        return (await self.transition(message, DeliveryEvent.APPROVE, actor_id)).message

    async def reject(self, message_id: str, actor_id: str | None = None) -> Message:
        message = await self._get(message_id)
        return (await self.transition(message, DeliveryEvent.REJECT, actor_id)).message

    async def get_status(self, message_id: str) -> MessageStatus:
        return (await self._get(message_id)).status()

    async def queue_stats(self) -> dict[str, Any]:
        counts = await self._store.count_by_state()
        ready = await self._store.list_ready_messages(self._clock(), self.settings.queue_batch_size)
        return {
            "by_state": {state.value: count for state, count in counts.items()},
            "ready": len(ready),
            "requires_attention": counts.get(DeliveryState.EXHAUSTED, 0),
        }


def _as_failure_code(code: str) -> FailureCode:
    try:
        return FailureCode(code)
    except ValueError:
        return FailureCode.UNKNOWN


def queue_priority_for(priority: Priority, severity: str | None = None) -> int:
    """Queue ordering score; emergency severity outranks message priority."""
    if severity is not None:
        return EMERGENCY_PRIORITY.get(severity, EMERGENCY_PRIORITY["normal"])
    return PRIORITY_SCORE[priority]
