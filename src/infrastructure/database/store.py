# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy implementation of the notification store.

Updates of messages and emergencies are issued as
``UPDATE ... WHERE id = :id AND version = :read_version``; zero affected
rows means a concurrent writer won and ConcurrencyConflict is raised.
Unique constraints back idempotency keys and per-guardian acknowledgments.
Driver errors surface as DatabaseError.
"""

import logging
from copy import deepcopy
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.core.notifications.errors import (
    ConcurrencyConflict,
    EmergencyNotFoundError,
    MessageNotFoundError,
    OfflineItemNotFoundError,
)
from src.core.notifications.models import (
    AckMethod,
    Acknowledgment,
    Channel,
    DeliveryAttempt,
    DeliveryState,
    EmergencyContext,
    EmergencyDetails,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    Message,
    MessageCategory,
    OfflineQueueItem,
    Priority,
    UserRole,
)
from src.core.notifications.rate_limit import RateLimitOverride
from src.infrastructure.database.connection import DatabaseError, DatabaseManager
from src.infrastructure.database.models import (
    AcknowledgmentRow,
    DeliveryAttemptRow,
    EmergencyRow,
    IdempotencyKeyRow,
    MessageRow,
    OfflineQueueItemRow,
    RateLimitOverrideRow,
)
from src.infrastructure.storage.base import NotificationStore
from src.utils.datetime import ensure_utc

logger = logging.getLogger(__name__)

_TERMINAL_EMERGENCY_STATES = (EmergencyState.RESOLVED.value, EmergencyState.CANCELLED.value)


class SqlAlchemyNotificationStore(NotificationStore):
    """Durable store over an initialized DatabaseManager."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # Messages

    async def create_messages(self, messages: list[Message]) -> list[Message]:
        keys = sorted({m.idempotency_key for m in messages if m.idempotency_key})
        now = min((ensure_utc(m.created_at) for m in messages), default=None)

        async with self._db.sessionmaker() as session:
            for key in keys:
                session.add(IdempotencyKeyRow(key=key, created_at=now))
            for message in messages:
                row = MessageRow(**_message_values(message))
                row.attempts = [_attempt_row(message.id, a) for a in message.attempts]
                session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info("Rejected duplicate insert: %s", e.orig)
                if keys:
                    raise ConcurrencyConflict("idempotency_key", keys[0]) from e
                raise ConcurrencyConflict("message", messages[0].id) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError("Failed to create messages", e) from e

        return [deepcopy(m) for m in messages]

    async def get_message(self, message_id: str) -> Message | None:
        async with self._db.session() as session:
            row = await session.get(MessageRow, message_id)
            return _message_from_row(row) if row else None

    async def update_message(self, message: Message) -> Message:
        async with self._db.session() as session:
            result = await session.execute(
                update(MessageRow)
                .where(MessageRow.id == message.id, MessageRow.version == message.version)
                .values(**_message_values(message, version=message.version + 1))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await session.scalar(
                    select(MessageRow.version).where(MessageRow.id == message.id)
                )
                if current is None:
                    raise MessageNotFoundError(message.id)
                raise ConcurrencyConflict("message", message.id, message.version, current)

            stored = await session.scalar(
                select(func.count())
                .select_from(DeliveryAttemptRow)
                .where(DeliveryAttemptRow.message_id == message.id)
            )
            for attempt in message.attempts[stored or 0:]:
                session.add(_attempt_row(message.id, attempt))

        updated = deepcopy(message)
        updated.version += 1
        return updated

    async def find_by_idempotency_key(self, key: str) -> list[Message]:
        return await self._select_messages(
            select(MessageRow)
            .where(MessageRow.idempotency_key == key)
            .order_by(MessageRow.created_at, MessageRow.id)
        )

    async def list_ready_messages(self, now: datetime, limit: int) -> list[Message]:
        now = ensure_utc(now)
        return await self._select_messages(
            select(MessageRow)
            .where(
                MessageRow.state == DeliveryState.QUEUED.value,
                or_(MessageRow.next_retry_at.is_(None), MessageRow.next_retry_at <= now),
            )
            .order_by(MessageRow.queue_priority.desc(), MessageRow.created_at)
            .limit(limit)
        )

    async def list_stale_messages(
        self,
        states: list[DeliveryState],
        updated_before: datetime,
        limit: int,
    ) -> list[Message]:
        return await self._select_messages(
            select(MessageRow)
            .where(
                MessageRow.state.in_([state.value for state in states]),
                MessageRow.updated_at < ensure_utc(updated_before),
            )
            .order_by(MessageRow.updated_at)
            .limit(limit)
        )

    async def list_messages_by_emergency(self, emergency_id: str) -> list[Message]:
        return await self._select_messages(
            select(MessageRow)
            .where(MessageRow.emergency_id == emergency_id)
            .order_by(MessageRow.created_at, MessageRow.id)
        )

    async def get_history_snapshot(
        self,
        sender_id: str,
        student_id: str,
        since: datetime,
    ) -> list[Message]:
        return await self._select_messages(
            select(MessageRow).where(
                or_(MessageRow.sender_id == sender_id, MessageRow.student_id == student_id),
                MessageRow.created_at >= ensure_utc(since),
            )
        )

    async def count_by_state(self) -> dict[DeliveryState, int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(MessageRow.state, func.count()).group_by(MessageRow.state)
            )
            counts = {DeliveryState(state): count for state, count in result.all()}
        return {state: counts.get(state, 0) for state in DeliveryState}

    async def _select_messages(self, statement: Any) -> list[Message]:
        async with self._db.session() as session:
            rows = (await session.scalars(statement)).all()
            return [_message_from_row(row) for row in rows]

    # Emergencies

    async def create_emergency(self, emergency: EmergencyContext) -> EmergencyContext:
        async with self._db.sessionmaker() as session:
            session.add(EmergencyRow(**_emergency_values(emergency)))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConcurrencyConflict("emergency", emergency.id) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError("Failed to create emergency", e) from e
        return deepcopy(emergency)

    async def get_emergency(self, emergency_id: str) -> EmergencyContext | None:
        async with self._db.session() as session:
            row = await session.get(EmergencyRow, emergency_id)
            return _emergency_from_row(row) if row else None

    async def update_emergency(self, emergency: EmergencyContext) -> EmergencyContext:
        async with self._db.session() as session:
            result = await session.execute(
                update(EmergencyRow)
                .where(EmergencyRow.id == emergency.id, EmergencyRow.version == emergency.version)
                .values(**_emergency_values(emergency, version=emergency.version + 1))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await session.scalar(
                    select(EmergencyRow.version).where(EmergencyRow.id == emergency.id)
                )
                if current is None:
                    raise EmergencyNotFoundError(emergency.id)
                raise ConcurrencyConflict("emergency", emergency.id, emergency.version, current)

        updated = deepcopy(emergency)
        updated.version += 1
        return updated

    async def list_active_emergencies(self) -> list[EmergencyContext]:
        async with self._db.session() as session:
            rows = (
                await session.scalars(
                    select(EmergencyRow)
                    .where(EmergencyRow.state.not_in(_TERMINAL_EMERGENCY_STATES))
                    .order_by(EmergencyRow.initiated_at)
                )
            ).all()
            return [_emergency_from_row(row) for row in rows]

    # Acknowledgments

    async def add_acknowledgment(self, ack: Acknowledgment) -> bool:
        async with self._db.sessionmaker() as session:
            session.add(
                AcknowledgmentRow(
                    id=ack.id,
                    emergency_id=ack.emergency_id,
                    guardian_id=ack.guardian_id,
                    acknowledged_at=ensure_utc(ack.acknowledged_at),
                    channel=ack.channel,
                    method=ack.method.value,
                    student_id=ack.student_id,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError("Failed to record acknowledgment", e) from e
        return True

    async def list_acknowledgments(self, emergency_id: str) -> list[Acknowledgment]:
        async with self._db.session() as session:
            rows = (
                await session.scalars(
                    select(AcknowledgmentRow)
                    .where(AcknowledgmentRow.emergency_id == emergency_id)
                    .order_by(AcknowledgmentRow.acknowledged_at)
                )
            ).all()
            return [
                Acknowledgment(
                    id=row.id,
                    emergency_id=row.emergency_id,
                    guardian_id=row.guardian_id,
                    acknowledged_at=ensure_utc(row.acknowledged_at),
                    channel=row.channel,
                    method=AckMethod(row.method),
                    student_id=row.student_id,
                )
                for row in rows
            ]

    # Offline queue

    async def add_offline_item(self, item: OfflineQueueItem) -> OfflineQueueItem:
        async with self._db.session() as session:
            session.add(OfflineQueueItemRow(**_offline_values(item)))
        return deepcopy(item)

    async def list_offline_items(self) -> list[OfflineQueueItem]:
        async with self._db.session() as session:
            rows = (
                await session.scalars(
                    select(OfflineQueueItemRow).order_by(
                        OfflineQueueItemRow.priority.desc(),
                        OfflineQueueItemRow.created_at,
                        OfflineQueueItemRow.seq,
                    )
                )
            ).all()
            return [_offline_from_row(row) for row in rows]

    async def update_offline_item(self, item: OfflineQueueItem) -> OfflineQueueItem:
        async with self._db.session() as session:
            result = await session.execute(
                update(OfflineQueueItemRow)
                .where(OfflineQueueItemRow.id == item.id)
                .values(**_offline_values(item))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise OfflineItemNotFoundError(item.id)
        return deepcopy(item)

    async def remove_offline_item(self, item_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(OfflineQueueItemRow).where(OfflineQueueItemRow.id == item_id)
            )
            return result.rowcount > 0

    async def count_offline_items(self) -> int:
        async with self._db.session() as session:
            count = await session.scalar(select(func.count()).select_from(OfflineQueueItemRow))
            return count or 0

    # Rate-limit overrides

    async def save_override(self, override: RateLimitOverride) -> RateLimitOverride:
        async with self._db.session() as session:
            session.add(
                RateLimitOverrideRow(
                    sender_id=override.sender_id,
                    multiplier=override.multiplier,
                    reason=override.reason,
                    granted_by=override.granted_by,
                    granted_at=ensure_utc(override.granted_at),
                    expires_at=ensure_utc(override.expires_at),
                )
            )
        return deepcopy(override)

    async def get_active_override(self, sender_id: str, now: datetime) -> RateLimitOverride | None:
        now = ensure_utc(now)
        async with self._db.session() as session:
            row = await session.scalar(
                select(RateLimitOverrideRow)
                .where(
                    RateLimitOverrideRow.sender_id == sender_id,
                    RateLimitOverrideRow.granted_at <= now,
                    RateLimitOverrideRow.expires_at > now,
                )
                .order_by(RateLimitOverrideRow.granted_at.desc())
                .limit(1)
            )
            if row is None:
                return None
            return RateLimitOverride(
                sender_id=row.sender_id,
                multiplier=row.multiplier,
                reason=row.reason,
                granted_by=row.granted_by,
                granted_at=ensure_utc(row.granted_at),
                expires_at=ensure_utc(row.expires_at),
            )


# Row mapping


def _message_values(message: Message, version: int | None = None) -> dict[str, Any]:
    return {
        "id": message.id,
        "category": message.category.value,
        "student_id": message.student_id,
        "guardian_id": message.guardian_id,
        "sender_id": message.sender_id,
        "sender_role": message.sender_role.value,
        "subject": message.subject,
        "body": message.body,
        "priority": message.priority.value,
        "queue_priority": message.queue_priority,
        "state": message.state.value,
        "addresses": {channel.value: address for channel, address in message.addresses.items()},
        "channel": message.channel.value if message.channel else None,
        "attempt_count": message.attempt_count,
        "attempt_offset": message.attempt_offset,
        "next_retry_at": ensure_utc(message.next_retry_at),
        "locked": message.locked,
        "version": message.version if version is None else version,
        "idempotency_key": message.idempotency_key,
        "emergency_id": message.emergency_id,
        "is_manual": message.is_manual,
        "abuse_flags": list(message.abuse_flags),
        "last_error_code": message.last_error_code,
        "created_at": ensure_utc(message.created_at),
        "updated_at": ensure_utc(message.updated_at),
        "sent_at": ensure_utc(message.sent_at),
        "delivered_at": ensure_utc(message.delivered_at),
        "cancelled_at": ensure_utc(message.cancelled_at),
        "rejected_at": ensure_utc(message.rejected_at),
    }


def _attempt_row(message_id: str, attempt: DeliveryAttempt) -> DeliveryAttemptRow:
    return DeliveryAttemptRow(
        message_id=message_id,
        attempt_number=attempt.attempt_number,
        channel=attempt.channel.value,
        started_at=ensure_utc(attempt.started_at),
        ended_at=ensure_utc(attempt.ended_at),
        success=attempt.success,
        error_code=attempt.error_code,
        error_message=attempt.error_message,
        latency_ms=attempt.latency_ms,
        provider_message_id=attempt.provider_message_id,
    )


def _message_from_row(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        category=MessageCategory(row.category),
        student_id=row.student_id,
        guardian_id=row.guardian_id,
        sender_id=row.sender_id,
        subject=row.subject,
        body=row.body,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        sender_role=UserRole(row.sender_role),
        priority=Priority(row.priority),
        queue_priority=row.queue_priority,
        state=DeliveryState(row.state),
        addresses={Channel(name): address for name, address in (row.addresses or {}).items()},
        channel=Channel(row.channel) if row.channel else None,
        attempt_count=row.attempt_count,
        attempts=[
            DeliveryAttempt(
                attempt_number=a.attempt_number,
                channel=Channel(a.channel),
                started_at=ensure_utc(a.started_at),
                ended_at=ensure_utc(a.ended_at),
                success=a.success,
                error_code=a.error_code,
                error_message=a.error_message,
                latency_ms=a.latency_ms,
                provider_message_id=a.provider_message_id,
            )
            for a in row.attempts
        ],
        attempt_offset=row.attempt_offset,
        next_retry_at=ensure_utc(row.next_retry_at),
        locked=row.locked,
        version=row.version,
        idempotency_key=row.idempotency_key,
        emergency_id=row.emergency_id,
        is_manual=row.is_manual,
        abuse_flags=list(row.abuse_flags or []),
        last_error_code=row.last_error_code,
        sent_at=ensure_utc(row.sent_at),
        delivered_at=ensure_utc(row.delivered_at),
        cancelled_at=ensure_utc(row.cancelled_at),
        rejected_at=ensure_utc(row.rejected_at),
    )


def _details_to_dict(details: EmergencyDetails) -> dict[str, Any]:
    return {
        "type": details.type.value,
        "title": details.title,
        "description": details.description,
        "severity": details.severity.value if details.severity else None,
        "school_name": details.school_name,
        "reason": details.reason,
        "date": details.date,
        "affected_areas": list(details.affected_areas),
        "infrastructure_type": details.infrastructure_type,
        "expected_resolution": details.expected_resolution,
        "action_required": details.action_required,
        "safety_instructions": list(details.safety_instructions),
    }


def _details_from_dict(data: dict[str, Any]) -> EmergencyDetails:
    return EmergencyDetails(
        type=EmergencyType(data["type"]),
        title=data["title"],
        description=data["description"],
        severity=EmergencySeverity(data["severity"]) if data.get("severity") else None,
        school_name=data.get("school_name", ""),
        reason=data.get("reason", ""),
        date=data.get("date", ""),
        affected_areas=list(data.get("affected_areas") or []),
        infrastructure_type=data.get("infrastructure_type"),
        expected_resolution=data.get("expected_resolution"),
        action_required=data.get("action_required"),
        safety_instructions=list(data.get("safety_instructions") or []),
    )


def _emergency_values(emergency: EmergencyContext, version: int | None = None) -> dict[str, Any]:
    return {
        "id": emergency.id,
        "school_id": emergency.school_id,
        "details": _details_to_dict(emergency.details),
        "severity": emergency.severity.value,
        "state": emergency.state.value,
        "initiated_by": emergency.initiated_by,
        "initiator_role": emergency.initiator_role.value,
        "initiated_at": ensure_utc(emergency.initiated_at),
        "updated_at": ensure_utc(emergency.updated_at),
        "requires_acknowledgment": emergency.requires_acknowledgment,
        "channels": [channel.value for channel in emergency.channels],
        "student_ids": list(emergency.student_ids) if emergency.student_ids is not None else None,
        "subject": emergency.subject,
        "body": emergency.body,
        "recipient_ids": list(emergency.recipient_ids),
        "total_recipients": emergency.total_recipients,
        "total_messages": emergency.total_messages,
        "sent_count": emergency.sent_count,
        "delivered_count": emergency.delivered_count,
        "failed_count": emergency.failed_count,
        "acknowledged_count": emergency.acknowledged_count,
        "pending_acks": emergency.pending_acks,
        "escalation_level": emergency.escalation_level,
        "last_escalation_at": ensure_utc(emergency.last_escalation_at),
        "broadcast_at": ensure_utc(emergency.broadcast_at),
        "resolved_at": ensure_utc(emergency.resolved_at),
        "resolved_by": emergency.resolved_by,
        "cancelled_at": ensure_utc(emergency.cancelled_at),
        "cancelled_by": emergency.cancelled_by,
        "version": emergency.version if version is None else version,
    }


def _emergency_from_row(row: EmergencyRow) -> EmergencyContext:
    return _emergency_from_values(
        {column.key: getattr(row, column.key) for column in EmergencyRow.__table__.columns}
    )


def _emergency_from_values(values: dict[str, Any]) -> EmergencyContext:
    return EmergencyContext(
        id=values["id"],
        school_id=values["school_id"],
        details=_details_from_dict(values["details"]),
        severity=EmergencySeverity(values["severity"]),
        initiated_by=values["initiated_by"],
        initiated_at=ensure_utc(values["initiated_at"]),
        updated_at=ensure_utc(values["updated_at"]),
        requires_acknowledgment=values["requires_acknowledgment"],
        channels=[Channel(name) for name in values["channels"]],
        student_ids=list(values["student_ids"]) if values["student_ids"] is not None else None,
        initiator_role=UserRole(values["initiator_role"]),
        state=EmergencyState(values["state"]),
        subject=values["subject"],
        body=values["body"],
        recipient_ids=list(values["recipient_ids"] or []),
        total_recipients=values["total_recipients"],
        total_messages=values["total_messages"],
        sent_count=values["sent_count"],
        delivered_count=values["delivered_count"],
        failed_count=values["failed_count"],
        acknowledged_count=values["acknowledged_count"],
        pending_acks=values["pending_acks"],
        escalation_level=values["escalation_level"],
        last_escalation_at=ensure_utc(values["last_escalation_at"]),
        broadcast_at=ensure_utc(values["broadcast_at"]),
        resolved_at=ensure_utc(values["resolved_at"]),
        resolved_by=values["resolved_by"],
        cancelled_at=ensure_utc(values["cancelled_at"]),
        cancelled_by=values["cancelled_by"],
        version=values["version"],
    )


def _offline_values(item: OfflineQueueItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "payload": dict(item.payload),
        "priority": item.priority,
        "device_id": item.device_id,
        "created_at": ensure_utc(item.created_at),
        "replay_attempts": item.replay_attempts,
        "last_error": item.last_error,
        "last_attempt_at": ensure_utc(item.last_attempt_at),
    }


def _offline_from_values(values: dict[str, Any]) -> OfflineQueueItem:
    return OfflineQueueItem(
        id=values["id"],
        payload=dict(values["payload"]),
        priority=values["priority"],
        device_id=values["device_id"],
        created_at=ensure_utc(values["created_at"]),
        replay_attempts=values["replay_attempts"],
        last_error=values["last_error"],
        last_attempt_at=ensure_utc(values["last_attempt_at"]),
    )


def _offline_from_row(row: OfflineQueueItemRow) -> OfflineQueueItem:
    return _offline_from_values(
        {
            "id": row.id,
            "payload": row.payload,
            "priority": row.priority,
            "device_id": row.device_id,
            "created_at": row.created_at,
            "replay_attempts": row.replay_attempts,
            "last_error": row.last_error,
            "last_attempt_at": row.last_attempt_at,
        }
    )
