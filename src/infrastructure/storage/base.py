# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Store interface for the notification core.

Every entity carries a ``version``. Updates are conditional on the
version the caller read: a mismatch raises ConcurrencyConflict instead
of overwriting a concurrent change. Reads return copies, so mutating a
returned object never changes stored state until it is written back.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from src.core.notifications.models import (
    Acknowledgment,
    DeliveryState,
    EmergencyContext,
    Message,
    OfflineQueueItem,
)
from src.core.notifications.rate_limit import RateLimitOverride


class NotificationStore(ABC):
    """Persistence for messages, emergencies, acknowledgments, offline items and overrides."""

    # Messages

    @abstractmethod
    async def create_messages(self, messages: list[Message]) -> list[Message]:
        """Insert new messages atomically.

        Raises:
            ConcurrencyConflict: If an idempotency key is already taken.
        """

    @abstractmethod
    async def get_message(self, message_id: str) -> Message | None: ...

    @abstractmethod
    async def update_message(self, message: Message) -> Message:
        """Write back a message read at ``message.version``.

        Returns:
            The stored copy with the incremented version.

        Raises:
            ConcurrencyConflict: If the stored version differs.
            MessageNotFoundError: If the message does not exist.
        """

    @abstractmethod
    async def find_by_idempotency_key(self, key: str) -> list[Message]:
        """Messages created under one idempotency key (one per guardian)."""

    @abstractmethod
    async def list_ready_messages(self, now: datetime, limit: int) -> list[Message]:
        """Queued messages whose retry time has come, highest priority first, then oldest."""

    @abstractmethod
    async def list_stale_messages(
        self,
        states: list[DeliveryState],
        updated_before: datetime,
        limit: int,
    ) -> list[Message]:
        """Messages in one of ``states`` not written since ``updated_before``, oldest first."""

    @abstractmethod
    async def list_messages_by_emergency(self, emergency_id: str) -> list[Message]: ...

    @abstractmethod
    async def get_history_snapshot(
        self,
        sender_id: str,
        student_id: str,
        since: datetime,
    ) -> list[Message]:
        """Messages by the sender or about the student created since ``since``, in one read."""

    @abstractmethod
    async def count_by_state(self) -> dict[DeliveryState, int]: ...

    # Emergencies

    @abstractmethod
    async def create_emergency(self, emergency: EmergencyContext) -> EmergencyContext: ...

    @abstractmethod
    async def get_emergency(self, emergency_id: str) -> EmergencyContext | None: ...

    @abstractmethod
    async def update_emergency(self, emergency: EmergencyContext) -> EmergencyContext:
        """Conditional write, same contract as ``update_message``."""

    @abstractmethod
    async def list_active_emergencies(self) -> list[EmergencyContext]:
        """Emergencies that are neither resolved nor cancelled."""

    # Acknowledgments

    @abstractmethod
    async def add_acknowledgment(self, ack: Acknowledgment) -> bool:
        """Append an acknowledgment.

        Returns:
            False if the guardian already acknowledged this emergency.
        """

    @abstractmethod
    async def list_acknowledgments(self, emergency_id: str) -> list[Acknowledgment]: ...

    # Offline queue

    @abstractmethod
    async def add_offline_item(self, item: OfflineQueueItem) -> OfflineQueueItem: ...

    @abstractmethod
    async def list_offline_items(self) -> list[OfflineQueueItem]:
        """Items in replay order: highest priority first, FIFO within a priority."""

    @abstractmethod
    async def update_offline_item(self, item: OfflineQueueItem) -> OfflineQueueItem: ...

    @abstractmethod
    async def remove_offline_item(self, item_id: str) -> bool: ...

    @abstractmethod
    async def count_offline_items(self) -> int: ...

    # Rate-limit overrides

    @abstractmethod
    async def save_override(self, override: RateLimitOverride) -> RateLimitOverride: ...

    @abstractmethod
    async def get_active_override(self, sender_id: str, now: datetime) -> RateLimitOverride | None: ...
