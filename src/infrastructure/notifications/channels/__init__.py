# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Notification channels for delivering guardian messages.

This package provides channel implementations in default rank order:

- RichMessagingChannel: Chat-style messages via an HTTP provider
- SmsChannel: Text messages via an HTTP SMS gateway
- EmailChannel: Email via SMTP

Usage:
    from src.infrastructure.notifications.channels import build_channels

    channels = build_channels(settings)
    result = await channels[Channel.SMS].send(payload)
"""

from src.core.config.settings import Settings
from src.core.notifications.models import Channel
from src.infrastructure.notifications.channels.base import (
    BaseChannel,
    ChannelResult,
    ChannelStatus,
    NotificationPayload,
    failure_code_for_status,
)
from src.infrastructure.notifications.channels.email import EmailChannel
from src.infrastructure.notifications.channels.http import HttpProviderChannel
from src.infrastructure.notifications.channels.rich_messaging import RichMessagingChannel
from src.infrastructure.notifications.channels.sms import SmsChannel


def build_channels(settings: Settings) -> dict[Channel, BaseChannel]:
    """Create one sender per configured channel."""
    return {
        Channel.RICH_MESSAGING: RichMessagingChannel(settings.rich_messaging),
        Channel.SMS: SmsChannel(settings.sms),
        Channel.EMAIL: EmailChannel(settings.smtp),
    }


__all__ = [
    # Base types
    "BaseChannel",
    "ChannelResult",
    "ChannelStatus",
    "NotificationPayload",
    "failure_code_for_status",
    # Channels
    "EmailChannel",
    "HttpProviderChannel",
    "RichMessagingChannel",
    "SmsChannel",
    "build_channels",
]
