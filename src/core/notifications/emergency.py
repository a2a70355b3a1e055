# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Emergency broadcast and escalation engine.

An emergency runs its own state machine above the per-message delivery
machine::

    initiated -> broadcasting -> escalating (repeatable)
         \\             \\               \\
          +-------------+---------------+-> resolved | cancelled

Broadcasting fans out one delivery message per eligible guardian per
channel the guardian has. Aggregate counters are recomputed from those
messages whenever the delivery engine publishes a ``message.*`` event
for the emergency, so duplicate events never double count.

Escalation levels trigger on cumulative elapsed time since initiation:
level N fires once the delays of levels 1..N have all passed.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from src.core.config.settings import EmergencySettings
from src.core.notifications.delivery import DeliveryEngine, queue_priority_for
from src.core.notifications.directory import GuardianDirectory
from src.core.notifications.errors import (
    AuthorizationError,
    ConcurrencyConflict,
    EmergencyNotFoundError,
    EscalationLimitError,
    InvalidTransitionError,
    NotificationError,
)
from src.core.notifications.models import (
    Acknowledgment,
    AckMethod,
    Channel,
    DeliveryState,
    DeliveryStats,
    EmergencyContext,
    EmergencyDetails,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    GuardianContact,
    Message,
    MessageCategory,
    Priority,
    UserRole,
    new_id,
)
from src.core.notifications.templates import MessageTemplate, TemplateVariable, render_template
from src.infrastructure.audit import AuditLogger
from src.infrastructure.events import EventBus, EventData, EventPatterns, EventTypes
from src.infrastructure.storage.base import NotificationStore
from src.utils.datetime import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

_MAX_WRITE_RETRIES = 5

_DRAINABLE_STATES = frozenset(
    {DeliveryState.IDLE, DeliveryState.PENDING, DeliveryState.QUEUED, DeliveryState.FAILED}
)

# Message states that move a recipient between the sent, delivered and failed counters.
_COUNTED_STATES = frozenset(
    state.value
    for state in (
        DeliveryState.SENT,
        DeliveryState.DELIVERED,
        DeliveryState.EXHAUSTED,
        DeliveryState.CANCELLED,
    )
)


# Configuration


@dataclass(frozen=True)
class EmergencyTypeConfig:
    """Defaults applied to an emergency of one type."""

    default_severity: EmergencySeverity
    requires_acknowledgment: bool
    channels: tuple[Channel, ...]


EMERGENCY_CONFIG: dict[EmergencyType, EmergencyTypeConfig] = {
    EmergencyType.SCHOOL_CLOSURE: EmergencyTypeConfig(
        EmergencySeverity.CRITICAL,
        True,
        (Channel.RICH_MESSAGING, Channel.SMS, Channel.EMAIL),
    ),
    EmergencyType.SAFETY_INCIDENT: EmergencyTypeConfig(
        EmergencySeverity.CRITICAL,
        True,
        (Channel.RICH_MESSAGING, Channel.SMS, Channel.EMAIL),
    ),
    EmergencyType.WEATHER_DISRUPTION: EmergencyTypeConfig(
        EmergencySeverity.HIGH,
        False,
        (Channel.RICH_MESSAGING, Channel.SMS, Channel.EMAIL),
    ),
    EmergencyType.INFRASTRUCTURE_FAILURE: EmergencyTypeConfig(
        EmergencySeverity.ELEVATED,
        False,
        (Channel.RICH_MESSAGING, Channel.SMS),
    ),
}


def _emergency_template(
    emergency_type: EmergencyType,
    subject: str,
    urgency_prefix: str,
    body: str,
    *required: str,
) -> MessageTemplate:
    return MessageTemplate(
        id=f"emergency_{emergency_type.value}",
        name=subject,
        category=MessageCategory.EMERGENCY,
        subject=subject,
        body=body,
        variables=tuple(TemplateVariable(key=key) for key in required),
        tone="formal",
        max_length=1000,
        action_required=True,
        urgency_prefix=urgency_prefix,
    )


EMERGENCY_TEMPLATES: dict[EmergencyType, MessageTemplate] = {
    EmergencyType.SCHOOL_CLOSURE: _emergency_template(
        EmergencyType.SCHOOL_CLOSURE,
        "School Closure Notice",
        "\U0001f534 URGENT: ",
        "Dear Parent/Guardian,\n\n"
        "{{school_name}} will be CLOSED on {{date}}.\n\n"
        "Reason: {{reason}}\n\n"
        "{{#if expected_resolution}}\nExpected reopening: {{expected_resolution}}\n{{/if}}\n\n"
        "{{#if action_required}}\nAction required: {{action_required}}\n{{/if}}\n\n"
        "Please confirm receipt of this message.\n\n"
        "Regards,\n{{school_name}} Administration",
        "school_name",
        "date",
        "reason",
    ),
    EmergencyType.SAFETY_INCIDENT: _emergency_template(
        EmergencyType.SAFETY_INCIDENT,
        "Safety Notice - Immediate Attention Required",
        "\U0001f6a8 SAFETY ALERT: ",
        "Dear Parent/Guardian,\n\n"
        "This is an important safety notice from {{school_name}}.\n\n"
        "{{description}}\n\n"
        "{{#if safety_instructions}}\nPlease follow these instructions:\n"
        "{{#each safety_instructions}}\n• {{this}}\n{{/each}}\n{{/if}}\n\n"
        "{{#if action_required}}\n{{action_required}}\n{{/if}}\n\n"
        "All students are safe. Please confirm receipt.\n\n"
        "{{school_name}} Administration",
        "school_name",
        "description",
    ),
    EmergencyType.WEATHER_DISRUPTION: _emergency_template(
        EmergencyType.WEATHER_DISRUPTION,
        "Weather Advisory",
        "⚠️ WEATHER NOTICE: ",
        "Dear Parent/Guardian,\n\n"
        "Due to {{reason}}, please note the following:\n\n"
        "{{description}}\n\n"
        "{{#if affected_areas}}\nAffected: {{affected_areas}}\n{{/if}}\n\n"
        "{{#if expected_resolution}}\nExpected resolution: {{expected_resolution}}\n{{/if}}\n\n"
        "{{#if action_required}}\n{{action_required}}\n{{/if}}\n\n"
        "Regards,\n{{school_name}}",
        "school_name",
        "reason",
        "description",
    ),
    EmergencyType.INFRASTRUCTURE_FAILURE: _emergency_template(
        EmergencyType.INFRASTRUCTURE_FAILURE,
        "Infrastructure Notice",
        "⚠️ NOTICE: ",
        "Dear Parent/Guardian,\n\n"
        "{{school_name}} is experiencing a {{infrastructure_type}} issue.\n\n"
        "{{description}}\n\n"
        "{{#if expected_resolution}}\nEstimated resolution: {{expected_resolution}}\n{{/if}}\n\n"
        "{{#if action_required}}\n{{action_required}}\n{{/if}}\n\n"
        "We will update you when the issue is resolved.\n\n"
        "{{school_name}} Administration",
        "school_name",
        "infrastructure_type",
        "description",
    ),
}


def render_emergency_message(details: EmergencyDetails) -> tuple[str, str]:
    """Subject and body of an emergency, urgency prefix included."""
    rendered = render_template(EMERGENCY_TEMPLATES[details.type], details.template_variables())
    if rendered.missing_variables:
        logger.warning(
            "Emergency %s message rendered without: %s",
            details.type.value,
            ", ".join(rendered.missing_variables),
        )
    return rendered.subject, rendered.body


# Escalation


class EscalationAction(str, Enum):
    RETRY_PRIMARY = "retry_primary"
    TRY_ALTERNATIVE_CHANNEL = "try_alternative_channel"
    TRY_SECONDARY_CONTACT = "try_secondary_contact"
    NOTIFY_ADMIN = "notify_admin"
    RESEND_ALL_CHANNELS = "resend_all_channels"


@dataclass(frozen=True)
class EscalationRule:
    """One level of the escalation ladder.

    Attributes:
        level: 1-based level number.
        trigger_after: Delay after the previous level's trigger time.
        actions: Actions performed when the level is entered.
    """

    level: int
    trigger_after: timedelta
    actions: tuple[EscalationAction, ...]


ESCALATION_RULES: tuple[EscalationRule, ...] = (
    EscalationRule(
        1,
        timedelta(seconds=180),
        (EscalationAction.RETRY_PRIMARY, EscalationAction.TRY_ALTERNATIVE_CHANNEL),
    ),
    EscalationRule(
        2,
        timedelta(seconds=300),
        (EscalationAction.TRY_SECONDARY_CONTACT, EscalationAction.NOTIFY_ADMIN),
    ),
    EscalationRule(
        3,
        timedelta(seconds=600),
        (EscalationAction.RESEND_ALL_CHANNELS, EscalationAction.NOTIFY_ADMIN),
    ),
)

MAX_ESCALATION_LEVEL = max(rule.level for rule in ESCALATION_RULES)


def get_escalation_rule(level: int) -> EscalationRule | None:
    return next((rule for rule in ESCALATION_RULES if rule.level == level), None)


def cumulative_trigger(level: int) -> timedelta:
    """Elapsed time since initiation at which ``level`` becomes due."""
    return sum(
        (rule.trigger_after for rule in ESCALATION_RULES if rule.level <= level),
        timedelta(0),
    )


def escalation_due(emergency: EmergencyContext, now: datetime) -> bool:
    """Whether the next level's cumulative trigger time has passed."""
    next_level = emergency.escalation_level + 1
    if get_escalation_rule(next_level) is None:
        return False
    elapsed = ensure_utc(now) - ensure_utc(emergency.initiated_at)
    return elapsed >= cumulative_trigger(next_level)


# State machine


class EmergencyEvent(str, Enum):
    START_BROADCAST = "start_broadcast"
    ESCALATE = "escalate"
    RESOLVE = "resolve"
    CANCEL = "cancel"


_ES = EmergencyState
_EE = EmergencyEvent

EMERGENCY_TRANSITIONS: dict[tuple[EmergencyState, EmergencyEvent], EmergencyState] = {
    (_ES.INITIATED, _EE.START_BROADCAST): _ES.BROADCASTING,
    (_ES.INITIATED, _EE.RESOLVE): _ES.RESOLVED,
    (_ES.INITIATED, _EE.CANCEL): _ES.CANCELLED,
    (_ES.BROADCASTING, _EE.ESCALATE): _ES.ESCALATING,
    (_ES.BROADCASTING, _EE.RESOLVE): _ES.RESOLVED,
    (_ES.BROADCASTING, _EE.CANCEL): _ES.CANCELLED,
    (_ES.ESCALATING, _EE.ESCALATE): _ES.ESCALATING,
    (_ES.ESCALATING, _EE.RESOLVE): _ES.RESOLVED,
    (_ES.ESCALATING, _EE.CANCEL): _ES.CANCELLED,
}


def next_emergency_state(state: EmergencyState, event: EmergencyEvent) -> EmergencyState:
    """Target state of ``event``; terminal states accept no events.

    Raises:
        InvalidTransitionError: The event is not valid in ``state``.
    """
    target = EMERGENCY_TRANSITIONS.get((state, event))
    if target is None:
        raise InvalidTransitionError("emergency", state.value, event.value)
    return target


def calculate_delivery_stats(
    recipient_ids: list[str],
    messages: list[Message],
    acknowledged: set[str],
) -> DeliveryStats:
    """Per-recipient delivery statistics.

    A recipient counts once, under the best state any of its messages
    reached: delivered, then sent, then still pending, then failed.
    """
    by_guardian: dict[str, set[DeliveryState]] = {guardian_id: set() for guardian_id in recipient_ids}
    for message in messages:
        if message.guardian_id in by_guardian:
            by_guardian[message.guardian_id].add(message.state)

    stats = DeliveryStats(total=len(by_guardian), acknowledged=len(acknowledged))
    for states in by_guardian.values():
        if DeliveryState.DELIVERED in states:
            stats.delivered += 1
        elif DeliveryState.SENT in states:
            stats.sent += 1
        elif states & {DeliveryState.IDLE, DeliveryState.PENDING, DeliveryState.QUEUED,
                       DeliveryState.SENDING, DeliveryState.FAILED}:
            stats.pending += 1
        elif states:
            stats.failed += 1

    if stats.total:
        stats.ack_rate = int(stats.acknowledged * 100 / stats.total + 0.5)
    return stats


class EmergencyEngine:
    """Admin-only emergency broadcasts layered over the delivery engine.

    Attributes:
        settings: Emergency settings (admin roles, check interval).
    """

    def __init__(
        self,
        store: NotificationStore,
        directory: GuardianDirectory,
        delivery: DeliveryEngine,
        settings: EmergencySettings,
        event_bus: EventBus | None = None,
        audit: AuditLogger | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._directory = directory
        self._delivery = delivery
        self.settings = settings
        self._event_bus = event_bus
        self._audit = audit
        self._clock = clock
        self._stale_counters: set[str] = set()
        self._refreshing: set[str] = set()
        if event_bus is not None:
            event_bus.subscribe(EventPatterns.ALL_MESSAGE, self._on_message_event)

    # Authorization

    def _is_admin(self, role: UserRole | str) -> bool:
        return getattr(role, "value", role) in self.settings.admin_roles

    def _require_admin(self, action: str, role: UserRole | str) -> None:
        if not self._is_admin(role):
            raise AuthorizationError(action, getattr(role, "value", str(role)))

    # Persistence helpers

    async def get_emergency(self, emergency_id: str) -> EmergencyContext:
        emergency = await self._store.get_emergency(emergency_id)
        if emergency is None:
            raise EmergencyNotFoundError(emergency_id)
        return emergency

    async def _update(
        self,
        emergency_id: str,
        mutate: Callable[[EmergencyContext], bool | None | Awaitable[bool | None]],
    ) -> EmergencyContext:
        """Read, mutate and conditionally write, re-reading on version conflicts.

        ``mutate`` may be a coroutine function so that whatever it reads is
        read again on every retry. It may raise to abort; returning False
        skips the write.
        """
        for _ in range(_MAX_WRITE_RETRIES):
            emergency = await self.get_emergency(emergency_id)
            outcome = mutate(emergency)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome is False:
                return emergency
            emergency.updated_at = self._clock()
            try:
                return await self._store.update_emergency(emergency)
            except ConcurrencyConflict:
                logger.debug("Emergency %s changed concurrently, re-reading", emergency_id)
        raise ConcurrencyConflict("emergency", emergency_id)

    async def _transition(
        self,
        emergency_id: str,
        event: EmergencyEvent,
        actor_id: str | None,
        apply: Callable[[EmergencyContext], None] | None = None,
    ) -> EmergencyContext:
        previous: dict[str, EmergencyState] = {}

        def mutate(emergency: EmergencyContext) -> None:
            previous["state"] = emergency.state
            emergency.state = next_emergency_state(emergency.state, event)
            if apply is not None:
                apply(emergency)

        emergency = await self._update(emergency_id, mutate)
        logger.info(
            "Emergency %s: %s -> %s (%s)",
            emergency_id,
            previous["state"].value,
            emergency.state.value,
            event.value,
        )
        await self._record(
            f"emergency.{event.value}",
            emergency,
            actor_id,
            {"previous_state": previous["state"].value, "state": emergency.state.value},
        )
        return emergency

    async def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, payload)

    async def _record(
        self,
        action: str,
        emergency: EmergencyContext,
        actor_id: str | None,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self._audit is not None:
            await self._audit.record(
                action,
                entity_type="emergency",
                entity_id=emergency.id,
                actor_id=actor_id,
                data={"school_id": emergency.school_id, **(data or {})},
            )

    # Lifecycle

    async def initiate_emergency(
        self,
        details: EmergencyDetails,
        *,
        school_id: str,
        initiated_by: str,
        role: UserRole | str,
        student_ids: list[str] | None = None,
        channels: list[Channel] | None = None,
        requires_acknowledgment: bool | None = None,
    ) -> EmergencyContext:
        """Create an emergency in the ``initiated`` state.

        Type defaults supply severity, channels and the acknowledgment
        requirement unless given explicitly.

        Raises:
            AuthorizationError: ``role`` is not an admin role.
        """
        self._require_admin("initiate emergencies", role)
        config = EMERGENCY_CONFIG[details.type]
        severity = details.severity or config.default_severity
        subject, body = render_emergency_message(details)
        now = self._clock()

        emergency = EmergencyContext(
            id=new_id("emg"),
            school_id=school_id,
            details=details,
            severity=severity,
            initiated_by=initiated_by,
            initiated_at=now,
            updated_at=now,
            requires_acknowledgment=(
                config.requires_acknowledgment
                if requires_acknowledgment is None
                else requires_acknowledgment
            ),
            channels=list(channels or config.channels),
            student_ids=student_ids,
            initiator_role=UserRole(getattr(role, "value", role)),
            subject=subject,
            body=body,
        )
        emergency = await self._store.create_emergency(emergency)

        logger.warning(
            "Emergency %s initiated by %s: %s (%s)",
            emergency.id,
            initiated_by,
            details.type.value,
            severity.value,
        )
        await self._publish(
            EventTypes.Emergency.INITIATED,
            {
                "emergency_id": emergency.id,
                "school_id": school_id,
                "type": details.type.value,
                "severity": severity.value,
            },
        )
        await self._record(
            "emergency.initiated",
            emergency,
            initiated_by,
            {"type": details.type.value, "severity": severity.value},
        )
        return emergency

    async def broadcast_emergency(self, emergency_id: str, actor_id: str | None = None) -> EmergencyContext:
        """Fan out one message per eligible guardian per channel.

        Recipient and message totals are snapshotted here and never
        recomputed.

        Raises:
            InvalidTransitionError: The emergency is not in ``initiated``.
        """
        emergency = await self.get_emergency(emergency_id)
        next_emergency_state(emergency.state, EmergencyEvent.START_BROADCAST)

        contacts = await self._directory.get_emergency_contacts(
            emergency.school_id, emergency.student_ids
        )
        now = self._clock()
        messages: list[Message] = []
        recipients: list[str] = []
        for contact in _unique_guardians(contacts):
            channels = self._channels_for(contact, emergency.channels)
            if not channels:
                logger.warning(
                    "Guardian %s has no address for emergency %s", contact.guardian_id, emergency_id
                )
                continue
            recipients.append(contact.guardian_id)
            for channel in channels:
                messages.append(
                    self._build_message(
                        emergency,
                        contact,
                        channel,
                        now,
                        idempotency_key=f"{emergency_id}:{contact.guardian_id}:{channel.value}",
                    )
                )

        def start(ctx: EmergencyContext) -> None:
            ctx.broadcast_at = now
            ctx.recipient_ids = recipients
            ctx.total_recipients = len(recipients)
            ctx.total_messages = len(messages)
            ctx.pending_acks = len(recipients) if ctx.requires_acknowledgment else 0

        emergency = await self._transition(emergency_id, EmergencyEvent.START_BROADCAST, actor_id, start)
        await self._publish(
            EventTypes.Emergency.BROADCASTING,
            {
                "emergency_id": emergency_id,
                "total_recipients": len(recipients),
                "total_messages": len(messages),
            },
        )
        if messages:
            await self._delivery.submit(messages)
        logger.info(
            "Emergency %s broadcast to %d guardians (%d messages)",
            emergency_id,
            len(recipients),
            len(messages),
        )
        return await self.get_emergency(emergency_id)

    def _channels_for(self, contact: GuardianContact, allowed: list[Channel] | None = None) -> list[Channel]:
        order = [c for c in self._delivery.channel_order if allowed is None or c in allowed]
        return list(contact.addresses(order))

    def _build_message(
        self,
        emergency: EmergencyContext,
        contact: GuardianContact,
        channel: Channel,
        now: datetime,
        idempotency_key: str | None = None,
    ) -> Message:
        return Message(
            id=new_id("msg"),
            category=MessageCategory.EMERGENCY,
            student_id=contact.student_id,
            guardian_id=contact.guardian_id,
            sender_id=emergency.initiated_by,
            sender_role=emergency.initiator_role,
            subject=emergency.subject,
            body=emergency.body,
            created_at=now,
            updated_at=now,
            priority=Priority.EMERGENCY,
            queue_priority=queue_priority_for(Priority.EMERGENCY, emergency.severity.value),
            addresses={channel: contact.address_for(channel) or ""},
            emergency_id=emergency.id,
            idempotency_key=idempotency_key,
        )

    async def record_acknowledgment(
        self,
        emergency_id: str,
        guardian_id: str,
        channel: str,
        method: AckMethod = AckMethod.BUTTON,
        student_id: str | None = None,
    ) -> bool:
        """Record a guardian's acknowledgment.

        Returns:
            False if the guardian had already acknowledged.

        Raises:
            InvalidTransitionError: The emergency was cancelled.
            NotificationError: The emergency sent the guardian nothing.
        """
        emergency = await self.get_emergency(emergency_id)
        if emergency.state is EmergencyState.CANCELLED:
            raise InvalidTransitionError(
                "emergency", emergency.state.value, "acknowledge", reason="emergency was cancelled"
            )
        if not await self._was_notified(emergency, guardian_id):
            raise NotificationError(
                f"Guardian {guardian_id} was not notified of emergency {emergency_id}",
                guardian_id=guardian_id,
            )

        ack = Acknowledgment(
            id=new_id("ack"),
            emergency_id=emergency_id,
            guardian_id=guardian_id,
            acknowledged_at=self._clock(),
            channel=channel,
            method=method,
            student_id=student_id,
        )
        if not await self._store.add_acknowledgment(ack):
            logger.debug("Duplicate acknowledgment from %s for %s", guardian_id, emergency_id)
            return False

        def count(ctx: EmergencyContext) -> None:
            ctx.acknowledged_count += 1
            if ctx.requires_acknowledgment and guardian_id in ctx.recipient_ids:
                ctx.pending_acks = max(ctx.pending_acks - 1, 0)

        emergency = await self._update(emergency_id, count)
        await self._publish(
            EventTypes.Emergency.ACKNOWLEDGED,
            {
                "emergency_id": emergency_id,
                "guardian_id": guardian_id,
                "channel": channel,
                "method": method.value,
                "acknowledged_count": emergency.acknowledged_count,
                "pending_acks": emergency.pending_acks,
            },
        )
        await self._record(
            "emergency.acknowledged",
            emergency,
            guardian_id,
            {"guardian_id": guardian_id, "channel": channel, "method": method.value},
        )
        return True

    async def _was_notified(self, emergency: EmergencyContext, guardian_id: str) -> bool:
        """Broadcast recipients and contacts reached by escalation or resend."""
        if guardian_id in emergency.recipient_ids:
            return True
        messages = await self._store.list_messages_by_emergency(emergency.id)
        return any(message.guardian_id == guardian_id for message in messages)

    async def resolve_emergency(
        self,
        emergency_id: str,
        actor_id: str,
        role: UserRole | str,
    ) -> EmergencyContext:
        """Resolve and drain still-queued messages.

        Raises:
            AuthorizationError: The actor is neither an admin nor the initiator.
            InvalidTransitionError: The emergency is already terminal.
        """
        emergency = await self.get_emergency(emergency_id)
        if not self._is_admin(role) and actor_id != emergency.initiated_by:
            raise AuthorizationError("resolve this emergency", getattr(role, "value", str(role)))

        def resolve(ctx: EmergencyContext) -> None:
            ctx.resolved_at = self._clock()
            ctx.resolved_by = actor_id

        emergency = await self._transition(emergency_id, EmergencyEvent.RESOLVE, actor_id, resolve)
        drained = await self._drain(emergency_id, actor_id)
        await self._publish(
            EventTypes.Emergency.RESOLVED,
            {"emergency_id": emergency_id, "resolved_by": actor_id, "drained": drained},
        )
        return await self.get_emergency(emergency_id)

    async def cancel_emergency(
        self,
        emergency_id: str,
        actor_id: str,
        role: UserRole | str,
    ) -> EmergencyContext:
        """Cancel and drain still-queued messages.

        Raises:
            AuthorizationError: ``role`` is not an admin role.
            InvalidTransitionError: The emergency is already terminal.
        """
        self._require_admin("cancel emergencies", role)

        def cancel(ctx: EmergencyContext) -> None:
            ctx.cancelled_at = self._clock()
            ctx.cancelled_by = actor_id

        await self._transition(emergency_id, EmergencyEvent.CANCEL, actor_id, cancel)
        drained = await self._drain(emergency_id, actor_id)
        await self._publish(
            EventTypes.Emergency.CANCELLED,
            {"emergency_id": emergency_id, "cancelled_by": actor_id, "drained": drained},
        )
        return await self.get_emergency(emergency_id)

    async def _drain(self, emergency_id: str, actor_id: str | None) -> int:
        """Cancel every not-yet-sent message of the emergency.

        Messages in flight are cancelled by the delivery engine when their
        attempt finishes without success.
        """
        drained = 0
        for message in await self._store.list_messages_by_emergency(emergency_id):
            if message.state not in _DRAINABLE_STATES:
                continue
            try:
                await self._delivery.cancel(message.id, actor_id)
                drained += 1
            except (ConcurrencyConflict, InvalidTransitionError) as e:
                logger.debug("Message %s not drained: %s", message.id, e.message)
        logger.info("Drained %d queued messages of emergency %s", drained, emergency_id)
        return drained

    # Escalation

    async def escalate(self, emergency_id: str, actor_id: str, role: UserRole | str) -> EmergencyContext:
        """Escalate manually to the next level, regardless of elapsed time.

        Raises:
            AuthorizationError: ``role`` is not an admin role.
            EscalationLimitError: The maximum level is already reached.
            InvalidTransitionError: The emergency is not broadcasting.
        """
        self._require_admin("escalate emergencies", role)
        emergency = await self.get_emergency(emergency_id)
        if emergency.escalation_level >= MAX_ESCALATION_LEVEL:
            raise EscalationLimitError(emergency_id, emergency.escalation_level, MAX_ESCALATION_LEVEL)
        return await self._escalate(emergency, actor_id, manual=True)

    async def check_escalations(self) -> list[str]:
        """Escalate every active emergency whose next level is due.

        Emergencies without outstanding recipients are left alone.

        Returns:
            Ids of the emergencies escalated by this check.
        """
        now = self._clock()
        escalated: list[str] = []
        for emergency in await self._store.list_active_emergencies():
            if emergency.state not in (EmergencyState.BROADCASTING, EmergencyState.ESCALATING):
                continue
            if not escalation_due(emergency, now):
                continue
            if not await self._outstanding_recipients(emergency):
                logger.debug("Emergency %s has no outstanding recipients", emergency.id)
                continue
            try:
                await self._escalate(emergency, None, manual=False)
            except (ConcurrencyConflict, InvalidTransitionError) as e:
                logger.info("Escalation of %s skipped: %s", emergency.id, e.message)
                continue
            escalated.append(emergency.id)
        return escalated

    async def _escalate(
        self,
        emergency: EmergencyContext,
        actor_id: str | None,
        manual: bool,
    ) -> EmergencyContext:
        target_level = emergency.escalation_level + 1
        rule = get_escalation_rule(target_level)
        if rule is None:
            raise EscalationLimitError(emergency.id, emergency.escalation_level, MAX_ESCALATION_LEVEL)

        def bump(ctx: EmergencyContext) -> None:
            if ctx.escalation_level + 1 != target_level:
                raise ConcurrencyConflict("emergency", ctx.id)
            ctx.escalation_level = target_level
            ctx.last_escalation_at = self._clock()

        emergency = await self._transition(emergency.id, EmergencyEvent.ESCALATE, actor_id, bump)
        logger.warning(
            "Emergency %s escalated to level %d (%s)",
            emergency.id,
            target_level,
            "manual" if manual else "scheduled",
        )

        outstanding = await self._outstanding_recipients(emergency)
        performed: dict[str, int] = {}
        for action in rule.actions:
            performed[action.value] = await self._perform(action, emergency, outstanding, actor_id)

        await self._publish(
            EventTypes.Emergency.ESCALATED,
            {
                "emergency_id": emergency.id,
                "level": target_level,
                "manual": manual,
                "actions": performed,
            },
        )
        return await self.get_emergency(emergency.id)

    async def _outstanding_recipients(self, emergency: EmergencyContext) -> list[str]:
        """Recipients still needing attention: unacknowledged, or undelivered when no ack is required."""
        if emergency.requires_acknowledgment:
            acked = {a.guardian_id for a in await self._store.list_acknowledgments(emergency.id)}
            return [g for g in emergency.recipient_ids if g not in acked]
        delivered = {
            m.guardian_id
            for m in await self._store.list_messages_by_emergency(emergency.id)
            if m.state is DeliveryState.DELIVERED
        }
        return [g for g in emergency.recipient_ids if g not in delivered]

    async def _perform(
        self,
        action: EscalationAction,
        emergency: EmergencyContext,
        guardian_ids: list[str],
        actor_id: str | None,
    ) -> int:
        handlers: dict[EscalationAction, Callable[..., Awaitable[int]]] = {
            EscalationAction.RETRY_PRIMARY: self._retry_primary,
            EscalationAction.TRY_ALTERNATIVE_CHANNEL: self._try_alternative_channel,
            EscalationAction.TRY_SECONDARY_CONTACT: self._try_secondary_contacts,
            EscalationAction.NOTIFY_ADMIN: self._notify_admin,
            EscalationAction.RESEND_ALL_CHANNELS: self._resend_all_channels,
        }
        return await handlers[action](emergency, guardian_ids, actor_id)

    async def _retry_primary(
        self, emergency: EmergencyContext, guardian_ids: list[str], actor_id: str | None
    ) -> int:
        """Requeue exhausted messages on each guardian's highest ranked channel."""
        wanted = set(guardian_ids)
        messages = [
            m for m in await self._store.list_messages_by_emergency(emergency.id) if m.guardian_id in wanted
        ]
        order = self._delivery.channel_order
        primary: dict[str, Channel] = {}
        for message in messages:
            for channel in message.addresses:
                best = primary.get(message.guardian_id)
                if best is None or order.index(channel) < order.index(best):
                    primary[message.guardian_id] = channel

        retried = 0
        for message in messages:
            if message.state is not DeliveryState.EXHAUSTED:
                continue
            if primary.get(message.guardian_id) not in message.addresses:
                continue
            try:
                await self._delivery.retry(message.id, Priority.EMERGENCY, actor_id)
                retried += 1
            except (ConcurrencyConflict, InvalidTransitionError) as e:
                logger.debug("Retry of %s skipped: %s", message.id, e.message)
        return retried

    async def _try_alternative_channel(
        self, emergency: EmergencyContext, guardian_ids: list[str], actor_id: str | None
    ) -> int:
        sent = 0
        for guardian_id in guardian_ids:
            try:
                await self.force_resend(emergency.id, guardian_id, actor_id=actor_id, alternative_only=True)
                sent += 1
            except NotificationError as e:
                logger.debug("No alternative channel for %s: %s", guardian_id, e.message)
        return sent

    async def _try_secondary_contacts(
        self, emergency: EmergencyContext, guardian_ids: list[str], actor_id: str | None
    ) -> int:
        """Message the alternate contacts of students whose guardians are outstanding."""
        wanted = set(guardian_ids)
        messages = await self._store.list_messages_by_emergency(emergency.id)
        student_ids = sorted({m.student_id for m in messages if m.guardian_id in wanted})
        if not student_ids:
            return 0

        already = {m.guardian_id for m in messages}
        now = self._clock()
        new_messages = [
            self._build_message(emergency, contact, channel, now)
            for contact in _unique_guardians(await self._directory.get_secondary_contacts(student_ids))
            if contact.guardian_id not in already
            for channel in self._channels_for(contact, emergency.channels)
        ]
        if new_messages:
            await self._delivery.submit(new_messages)
        logger.info(
            "Emergency %s reached %d secondary contact messages",
            emergency.id,
            len(new_messages),
        )
        return len(new_messages)

    async def _notify_admin(
        self, emergency: EmergencyContext, guardian_ids: list[str], actor_id: str | None
    ) -> int:
        payload = {
            "emergency_id": emergency.id,
            "school_id": emergency.school_id,
            "level": emergency.escalation_level,
            "outstanding_recipients": len(guardian_ids),
        }
        logger.warning(
            "Emergency %s needs admin attention: %d recipients outstanding",
            emergency.id,
            len(guardian_ids),
        )
        await self._publish(EventTypes.Emergency.ADMIN_NOTIFIED, payload)
        await self._record("emergency.admin_notified", emergency, actor_id, payload)
        return 1

    async def _resend_all_channels(
        self, emergency: EmergencyContext, guardian_ids: list[str], actor_id: str | None
    ) -> int:
        contacts = await self._contacts(emergency)
        sent = 0
        for guardian_id in guardian_ids:
            contact = contacts.get(guardian_id)
            if contact is None:
                continue
            for channel in self._channels_for(contact):
                await self.force_resend(emergency.id, guardian_id, channel, actor_id)
                sent += 1
        return sent

    async def _contacts(self, emergency: EmergencyContext) -> dict[str, GuardianContact]:
        contacts = await self._directory.get_emergency_contacts(emergency.school_id, emergency.student_ids)
        return {c.guardian_id: c for c in _unique_guardians(contacts)}

    async def force_resend(
        self,
        emergency_id: str,
        guardian_id: str,
        channel: Channel | None = None,
        actor_id: str | None = None,
        alternative_only: bool = False,
    ) -> Message:
        """Send a fresh message to one recipient.

        Without ``channel``, the first channel not yet used for this
        recipient within the emergency is chosen, falling back to the
        recipient's highest ranked channel unless ``alternative_only``.

        Raises:
            InvalidTransitionError: The emergency is terminal.
            NotificationError: No usable channel for the recipient.
        """
        emergency = await self.get_emergency(emergency_id)
        if emergency.is_terminal:
            raise InvalidTransitionError("emergency", emergency.state.value, "resend")

        contact = (await self._contacts(emergency)).get(guardian_id)
        if contact is None:
            raise NotificationError(
                f"Guardian {guardian_id} is not an emergency contact", guardian_id=guardian_id
            )

        available = self._channels_for(contact)
        if channel is None:
            used = {
                c
                for m in await self._store.list_messages_by_emergency(emergency_id)
                if m.guardian_id == guardian_id
                for c in m.addresses
            }
            unused = [c for c in available if c not in used]
            if unused:
                channel = unused[0]
            elif available and not alternative_only:
                channel = available[0]
        if channel is None or channel not in available:
            raise NotificationError(
                f"No usable channel to resend to guardian {guardian_id}",
                guardian_id=guardian_id,
                channel=channel.value if channel else None,
            )

        message = self._build_message(emergency, contact, channel, self._clock())
        stored = (await self._delivery.submit([message]))[0]
        logger.info("Emergency %s resent to %s via %s", emergency_id, guardian_id, channel.value)
        await self._record(
            "emergency.force_resend",
            emergency,
            actor_id,
            {"guardian_id": guardian_id, "channel": channel.value, "message_id": stored.id},
        )
        return stored

    # Counters

    async def _on_message_event(self, event: EventData) -> None:
        emergency_id = event.payload.get("emergency_id")
        if not emergency_id:
            return
        states = {event.payload.get("state"), event.payload.get("previous_state")}
        if not states & _COUNTED_STATES:
            return

        # Events arriving while a refresh runs are folded into one more pass.
        self._stale_counters.add(emergency_id)
        if emergency_id in self._refreshing:
            return
        self._refreshing.add(emergency_id)
        try:
            while emergency_id in self._stale_counters:
                self._stale_counters.discard(emergency_id)
                await self.refresh_counters(emergency_id)
        finally:
            self._refreshing.discard(emergency_id)

    async def refresh_counters(self, emergency_id: str) -> EmergencyContext:
        """Recompute sent/delivered/failed recipient counts from the emergency's messages."""

        async def recount(ctx: EmergencyContext) -> bool:
            messages = await self._store.list_messages_by_emergency(emergency_id)
            stats = calculate_delivery_stats(ctx.recipient_ids, messages, set())
            sent = stats.sent + stats.delivered
            if (ctx.sent_count, ctx.delivered_count, ctx.failed_count) == (
                sent,
                stats.delivered,
                stats.failed,
            ):
                return False
            ctx.sent_count = sent
            ctx.delivered_count = stats.delivered
            ctx.failed_count = stats.failed
            return True

        return await self._update(emergency_id, recount)

    async def delivery_stats(self, emergency_id: str) -> DeliveryStats:
        emergency = await self.get_emergency(emergency_id)
        messages = await self._store.list_messages_by_emergency(emergency_id)
        acked = {a.guardian_id for a in await self._store.list_acknowledgments(emergency_id)}
        return calculate_delivery_stats(emergency.recipient_ids, messages, acked)


def _unique_guardians(contacts: list[GuardianContact]) -> list[GuardianContact]:
    """First link per guardian, preserving directory order."""
    seen: set[str] = set()
    unique: list[GuardianContact] = []
    for contact in contacts:
        if contact.guardian_id not in seen:
            seen.add(contact.guardian_id)
            unique.append(contact)
    return unique
