# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Event infrastructure for the notification core.

Components:
- EventBus: In-memory pub/sub with pattern matching
- EventTypes: Centralized event type constants

Quick Start:
    from src.infrastructure.events import EventBus, EventTypes

    bus = EventBus()
    bus.subscribe(EventTypes.Message.DELIVERED, my_handler)
    await bus.publish(EventTypes.Message.DELIVERED, {"message_id": "msg_1"})
"""

from src.infrastructure.events.bus import EventBus, EventData, EventHandler
from src.infrastructure.events.types import EventPatterns, EventTypes

__all__ = [
    "EventBus",
    "EventData",
    "EventHandler",
    "EventTypes",
    "EventPatterns",
]
