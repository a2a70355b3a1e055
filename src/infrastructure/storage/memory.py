# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""In-memory notification store.

Used by tests and single-process deployments. One asyncio lock
serializes writes; reads and writes exchange deep copies.
"""

import asyncio
from collections import Counter
from copy import deepcopy
from datetime import datetime

from src.core.notifications.errors import (
    ConcurrencyConflict,
    EmergencyNotFoundError,
    MessageNotFoundError,
    OfflineItemNotFoundError,
)
from src.core.notifications.models import (
    Acknowledgment,
    DeliveryState,
    EmergencyContext,
    Message,
    OfflineQueueItem,
)
from src.core.notifications.rate_limit import RateLimitOverride
from src.infrastructure.storage.base import NotificationStore
from src.utils.datetime import ensure_utc


class InMemoryNotificationStore(NotificationStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._messages: dict[str, Message] = {}
        self._idempotency: dict[str, list[str]] = {}
        self._emergencies: dict[str, EmergencyContext] = {}
        self._acks: dict[str, list[Acknowledgment]] = {}
        self._offline: dict[str, OfflineQueueItem] = {}
        self._offline_seq: dict[str, int] = {}
        self._seq = 0
        self._overrides: dict[str, list[RateLimitOverride]] = {}

    # Messages

    async def create_messages(self, messages: list[Message]) -> list[Message]:
        async with self._lock:
            for message in messages:
                if message.id in self._messages:
                    raise ConcurrencyConflict("message", message.id)
            keys = {m.idempotency_key for m in messages if m.idempotency_key}
            for key in keys:
                if key in self._idempotency:
                    raise ConcurrencyConflict("idempotency_key", key)

            for message in messages:
                stored = deepcopy(message)
                self._messages[stored.id] = stored
                if stored.idempotency_key:
                    self._idempotency.setdefault(stored.idempotency_key, []).append(stored.id)
            return [deepcopy(m) for m in messages]

    async def get_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        return deepcopy(message) if message else None

    async def update_message(self, message: Message) -> Message:
        async with self._lock:
            current = self._messages.get(message.id)
            if current is None:
                raise MessageNotFoundError(message.id)
            if current.version != message.version:
                raise ConcurrencyConflict("message", message.id, message.version, current.version)
            stored = deepcopy(message)
            stored.version += 1
            self._messages[stored.id] = stored
            return deepcopy(stored)

    async def find_by_idempotency_key(self, key: str) -> list[Message]:
        return [deepcopy(self._messages[mid]) for mid in self._idempotency.get(key, [])]

    async def list_ready_messages(self, now: datetime, limit: int) -> list[Message]:
        now = ensure_utc(now)
        ready = [
            m
            for m in self._messages.values()
            if m.state is DeliveryState.QUEUED
            and (m.next_retry_at is None or ensure_utc(m.next_retry_at) <= now)
        ]
        ready.sort(key=lambda m: (-m.queue_priority, ensure_utc(m.created_at)))
        return [deepcopy(m) for m in ready[:limit]]

    async def list_stale_messages(
        self,
        states: list[DeliveryState],
        updated_before: datetime,
        limit: int,
    ) -> list[Message]:
        updated_before = ensure_utc(updated_before)
        stale = [
            m
            for m in self._messages.values()
            if m.state in states and ensure_utc(m.updated_at) < updated_before
        ]
        stale.sort(key=lambda m: ensure_utc(m.updated_at))
        return [deepcopy(m) for m in stale[:limit]]

    async def list_messages_by_emergency(self, emergency_id: str) -> list[Message]:
        return [deepcopy(m) for m in self._messages.values() if m.emergency_id == emergency_id]

    async def get_history_snapshot(
        self,
        sender_id: str,
        student_id: str,
        since: datetime,
    ) -> list[Message]:
        since = ensure_utc(since)
        async with self._lock:
            return [
                deepcopy(m)
                for m in self._messages.values()
                if (m.sender_id == sender_id or m.student_id == student_id)
                and ensure_utc(m.created_at) >= since
            ]

    async def count_by_state(self) -> dict[DeliveryState, int]:
        counts = Counter(m.state for m in self._messages.values())
        return {state: counts.get(state, 0) for state in DeliveryState}

    # Emergencies

    async def create_emergency(self, emergency: EmergencyContext) -> EmergencyContext:
        async with self._lock:
            if emergency.id in self._emergencies:
                raise ConcurrencyConflict("emergency", emergency.id)
            self._emergencies[emergency.id] = deepcopy(emergency)
            return deepcopy(emergency)

    async def get_emergency(self, emergency_id: str) -> EmergencyContext | None:
        emergency = self._emergencies.get(emergency_id)
        return deepcopy(emergency) if emergency else None

    async def update_emergency(self, emergency: EmergencyContext) -> EmergencyContext:
        async with self._lock:
            current = self._emergencies.get(emergency.id)
            if current is None:
                raise EmergencyNotFoundError(emergency.id)
            if current.version != emergency.version:
                raise ConcurrencyConflict(
                    "emergency", emergency.id, emergency.version, current.version
                )
            stored = deepcopy(emergency)
            stored.version += 1
            self._emergencies[stored.id] = stored
            return deepcopy(stored)

    async def list_active_emergencies(self) -> list[EmergencyContext]:
        return [deepcopy(e) for e in self._emergencies.values() if not e.is_terminal]

    # Acknowledgments

    async def add_acknowledgment(self, ack: Acknowledgment) -> bool:
        async with self._lock:
            acks = self._acks.setdefault(ack.emergency_id, [])
            if any(existing.guardian_id == ack.guardian_id for existing in acks):
                return False
            acks.append(deepcopy(ack))
            return True

    async def list_acknowledgments(self, emergency_id: str) -> list[Acknowledgment]:
        return [deepcopy(a) for a in self._acks.get(emergency_id, [])]

    # Offline queue

    async def add_offline_item(self, item: OfflineQueueItem) -> OfflineQueueItem:
        async with self._lock:
            self._seq += 1
            self._offline[item.id] = deepcopy(item)
            self._offline_seq[item.id] = self._seq
            return deepcopy(item)

    async def list_offline_items(self) -> list[OfflineQueueItem]:
        items = sorted(
            self._offline.values(),
            key=lambda i: (-i.priority, ensure_utc(i.created_at), self._offline_seq[i.id]),
        )
        return [deepcopy(i) for i in items]

    async def update_offline_item(self, item: OfflineQueueItem) -> OfflineQueueItem:
        async with self._lock:
            if item.id not in self._offline:
                raise OfflineItemNotFoundError(item.id)
            self._offline[item.id] = deepcopy(item)
            return deepcopy(item)

    async def remove_offline_item(self, item_id: str) -> bool:
        async with self._lock:
            self._offline_seq.pop(item_id, None)
            return self._offline.pop(item_id, None) is not None

    async def count_offline_items(self) -> int:
        return len(self._offline)

    # Rate-limit overrides

    async def save_override(self, override: RateLimitOverride) -> RateLimitOverride:
        async with self._lock:
            self._overrides.setdefault(override.sender_id, []).append(deepcopy(override))
            return deepcopy(override)

    async def get_active_override(self, sender_id: str, now: datetime) -> RateLimitOverride | None:
        active = [o for o in self._overrides.get(sender_id, []) if o.is_active(now)]
        if not active:
            return None
        return deepcopy(max(active, key=lambda o: ensure_utc(o.granted_at)))
