# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Notification channel senders.

The delivery engine in ``src.core.notifications.delivery`` picks a
channel per attempt and hands a NotificationPayload to the matching
sender from this package.
"""

from src.infrastructure.notifications.channels import (
    BaseChannel,
    ChannelResult,
    ChannelStatus,
    EmailChannel,
    NotificationPayload,
    RichMessagingChannel,
    SmsChannel,
    build_channels,
)

__all__ = [
    "BaseChannel",
    "ChannelResult",
    "ChannelStatus",
    "EmailChannel",
    "NotificationPayload",
    "RichMessagingChannel",
    "SmsChannel",
    "build_channels",
]
