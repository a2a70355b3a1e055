# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Centralized event type definitions for the notification core.

Message events are named after the state a message entered, so a
subscriber can follow one state with ``message.<state>`` or all of them
with ``message.*``.
"""

from typing import Any


class EventTypes:
    """All event types, organized by domain."""

    class Message:
        """Delivery state changes of a single message."""

        QUEUED = "message.queued"
        PENDING = "message.pending"
        SENDING = "message.sending"
        SENT = "message.sent"
        DELIVERED = "message.delivered"
        FAILED = "message.failed"
        EXHAUSTED = "message.exhausted"
        CANCELLED = "message.cancelled"

        @staticmethod
        def for_state(state: Any) -> str:
            return f"message.{getattr(state, 'value', state)}"

    class Emergency:
        INITIATED = "emergency.initiated"
        BROADCASTING = "emergency.broadcasting"
        ESCALATED = "emergency.escalated"
        ACKNOWLEDGED = "emergency.acknowledged"
        RESOLVED = "emergency.resolved"
        CANCELLED = "emergency.cancelled"
        ADMIN_NOTIFIED = "emergency.admin_notified"

    class OfflineQueue:
        ENQUEUED = "offline_queue.enqueued"
        REPLAYED = "offline_queue.replayed"
        DROPPED = "offline_queue.dropped"

    class Connectivity:
        ONLINE = "connectivity.online"
        OFFLINE = "connectivity.offline"


class EventPatterns:
    """Wildcard patterns for subscribing to groups of events."""

    ALL_MESSAGE = "message.*"
    ALL_EMERGENCY = "emergency.*"
    ALL_OFFLINE_QUEUE = "offline_queue.*"
    ALL_AUDIT = "audit.*"
    ALL = "*"
