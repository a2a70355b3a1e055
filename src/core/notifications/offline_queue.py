# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Durable buffer for send requests captured while disconnected.

Items replay in priority order, oldest first within a priority, through
the normal send path. Each item id doubles as the idempotency key of its
request, so replaying an item whose send already went through returns
the existing messages instead of creating new ones.

Items are only removed on a confirmed submission, when they outlive the
retention period, or after the replay attempt budget is spent. Every
removal other than a confirmed submission is audit-logged.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from src.core.config.settings import OfflineQueueSettings
from src.core.notifications.errors import NotificationError, OfflineQueueFullError
from src.core.notifications.models import (
    PRIORITY_SCORE,
    OfflineQueueItem,
    SendRequest,
    new_id,
)
from src.infrastructure.audit import AuditLogger
from src.infrastructure.events import EventBus, EventTypes
from src.infrastructure.storage.base import NotificationStore
from src.utils.datetime import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

SendFunction = Callable[[SendRequest], Awaitable[Any]]


@dataclass
class ReplayResult:
    """Outcome of one replay cycle."""

    replayed: int = 0
    failed: int = 0
    dropped: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class OfflineQueue:
    """Priority-ordered offline buffer over the injected store.

    Attributes:
        settings: Queue size, replay budget and retention.
    """

    def __init__(
        self,
        store: NotificationStore,
        settings: OfflineQueueSettings,
        event_bus: EventBus | None = None,
        audit: AuditLogger | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self.settings = settings
        self._event_bus = event_bus
        self._audit = audit
        self._clock = clock
        self._replay_lock = asyncio.Lock()

    async def enqueue(self, request: SendRequest) -> OfflineQueueItem:
        """Buffer a send request.

        A request whose idempotency key is already queued returns the
        queued item. When the queue is full, the oldest item of the lowest
        priority is evicted if the new request outranks it.

        Raises:
            OfflineQueueFullError: The queue is full and nothing ranks lower.
        """
        items = await self._store.list_offline_items()
        if request.idempotency_key:
            existing = next((i for i in items if i.id == request.idempotency_key), None)
            if existing is not None:
                logger.debug("Offline item %s already queued", existing.id)
                return existing

        priority = PRIORITY_SCORE[request.priority]
        if len(items) >= self.settings.max_size:
            victim = min(items, key=lambda i: (i.priority, ensure_utc(i.created_at)))
            if victim.priority >= priority:
                logger.warning(
                    "Offline queue full (%d items); rejecting %s request from %s",
                    len(items),
                    request.priority.value,
                    request.sender_id,
                )
                raise OfflineQueueFullError(self.settings.max_size)
            await self._drop(victim, "evicted by a higher priority request")

        item_id = request.idempotency_key or new_id("offline")
        payload = request.to_payload()
        payload["idempotency_key"] = item_id
        item = await self._store.add_offline_item(
            OfflineQueueItem(
                id=item_id,
                payload=payload,
                priority=priority,
                device_id=self.settings.device_id,
                created_at=self._clock(),
            )
        )
        logger.info("Queued offline item %s (priority %d)", item.id, item.priority)
        await self._publish(
            EventTypes.OfflineQueue.ENQUEUED,
            {"item_id": item.id, "priority": item.priority, "device_id": item.device_id},
        )
        return item

    async def replay(self, send: SendFunction) -> ReplayResult:
        """Submit every queued item through ``send``.

        Items that fail stay queued with their attempt count raised; once
        the replay budget is spent they are dropped. Concurrent replays in
        one process are serialized.
        """
        async with self._replay_lock:
            result = ReplayResult()
            result.dropped += await self.prune()

            for item in await self._store.list_offline_items():
                try:
                    request = SendRequest.from_payload(item.payload)
                    await send(request)
                except NotificationError as e:
                    await self._record_failure(item, e.message, result)
                    continue
                except Exception as e:
                    logger.error("Replay of offline item %s failed: %s", item.id, str(e), exc_info=True)
                    await self._record_failure(item, str(e), result)
                    continue

                await self._store.remove_offline_item(item.id)
                result.replayed += 1
                await self._publish(EventTypes.OfflineQueue.REPLAYED, {"item_id": item.id})

            if result.replayed or result.failed or result.dropped:
                logger.info(
                    "Offline replay: %d replayed, %d failed, %d dropped",
                    result.replayed,
                    result.failed,
                    result.dropped,
                )
            return result

    async def _record_failure(self, item: OfflineQueueItem, error: str, result: ReplayResult) -> None:
        item.replay_attempts += 1
        item.last_error = error
        item.last_attempt_at = self._clock()
        result.errors[item.id] = error

        if item.replay_attempts >= self.settings.max_replay_attempts:
            await self._drop(item, f"replay budget exhausted: {error}")
            result.dropped += 1
            return

        await self._store.update_offline_item(item)
        result.failed += 1
        logger.warning(
            "Offline item %s failed replay %d/%d: %s",
            item.id,
            item.replay_attempts,
            self.settings.max_replay_attempts,
            error,
        )

    async def prune(self) -> int:
        """Drop items older than the retention period."""
        cutoff = self._clock() - timedelta(days=self.settings.retention_days)
        dropped = 0
        for item in await self._store.list_offline_items():
            if ensure_utc(item.created_at) < cutoff:
                await self._drop(item, f"older than {self.settings.retention_days} days")
                dropped += 1
        return dropped

    async def _drop(self, item: OfflineQueueItem, reason: str) -> None:
        await self._store.remove_offline_item(item.id)
        logger.warning("Dropped offline item %s: %s", item.id, reason)
        data = {
            "item_id": item.id,
            "reason": reason,
            "priority": item.priority,
            "device_id": item.device_id,
            "replay_attempts": item.replay_attempts,
            "sender_id": item.payload.get("sender_id"),
            "student_id": item.payload.get("student_id"),
        }
        await self._publish(EventTypes.OfflineQueue.DROPPED, data)
        if self._audit is not None:
            await self._audit.record(
                "offline_queue.dropped",
                entity_type="offline_queue_item",
                entity_id=item.id,
                data=data,
            )

    async def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, payload)

    async def items(self) -> list[OfflineQueueItem]:
        return await self._store.list_offline_items()

    async def get_stats(self) -> dict[str, Any]:
        items = await self._store.list_offline_items()
        by_priority = Counter(item.priority for item in items)
        oldest = min((ensure_utc(item.created_at) for item in items), default=None)
        return {
            "size": len(items),
            "max_size": self.settings.max_size,
            "device_id": self.settings.device_id,
            "by_priority": dict(sorted(by_priority.items(), reverse=True)),
            "retrying": sum(1 for item in items if item.replay_attempts > 0),
            "oldest_created_at": oldest.isoformat() if oldest else None,
        }
