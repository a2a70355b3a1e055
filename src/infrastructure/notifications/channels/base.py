# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Base classes for notification channels.

This module defines the abstract base class and shared types
for all notification channels. Each channel handles delivery
through a specific medium (rich messaging, SMS, email).

Channels report outcomes as ChannelResult values; they never retry
on their own. Retry, fallback and timeouts belong to the delivery
engine.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from src.core.notifications.models import Channel, FailureCode, Message
from src.utils.datetime import utc_now


class ChannelStatus(str, Enum):
    """Outcome of one channel send."""

    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class NotificationPayload:
    """Payload for sending one message through one channel.

    Attributes:
        message_id: Message being delivered.
        channel: Target channel.
        address: Channel address (handle, phone number or email).
        subject: Rendered subject.
        body: Rendered body.
        category: Message category value.
        guardian_id: Recipient guardian.
        student_id: Student the message is about.
        priority: Delivery priority value.
        emergency_id: Owning emergency, if any.
        data: Additional provider data.
    """

    message_id: str
    channel: Channel
    address: str
    subject: str
    body: str
    category: str
    guardian_id: str
    student_id: str
    priority: str = "normal"
    emergency_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Message, channel: Channel) -> "NotificationPayload":
        return cls(
            message_id=message.id,
            channel=channel,
            address=message.addresses.get(channel, ""),
            subject=message.subject,
            body=message.body,
            category=message.category.value,
            guardian_id=message.guardian_id,
            student_id=message.student_id,
            priority=message.priority.value,
            emergency_id=message.emergency_id,
        )


@dataclass
class ChannelResult:
    """Result of a channel send operation.

    Attributes:
        channel: Which channel was used.
        status: Send outcome.
        provider_message_id: External message ID (if available).
        error_code: Failure code when the send failed or was skipped.
        error_message: Error message if failed.
        sent_at: When the send completed.
        metadata: Additional result metadata.
    """

    channel: Channel
    status: ChannelStatus
    provider_message_id: str | None = None
    error_code: FailureCode | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (ChannelStatus.SENT, ChannelStatus.DELIVERED)

    @property
    def delivered(self) -> bool:
        return self.status is ChannelStatus.DELIVERED


class BaseChannel(ABC):
    """Abstract base class for notification channels.

    Each channel implementation handles delivery through
    a specific medium. Channels must implement the send
    method and translate provider errors into failure codes.

    Attributes:
        channel_type: The channel this sender serves.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    @abstractmethod
    def channel_type(self) -> Channel:
        """Return the channel type."""
        ...

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> ChannelResult:
        """Send a message through this channel.

        Args:
            payload: The notification payload to send.

        Returns:
            ChannelResult with the send outcome.
        """
        ...

    async def close(self) -> None:
        """Release provider connections. No-op by default."""

    def create_success_result(
        self,
        provider_message_id: str | None = None,
        delivered: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> ChannelResult:
        """Create a successful channel result.

        Args:
            provider_message_id: External message ID.
            delivered: Provider confirmed delivery synchronously.
            metadata: Additional metadata.
        """
        return ChannelResult(
            channel=self.channel_type,
            status=ChannelStatus.DELIVERED if delivered else ChannelStatus.SENT,
            provider_message_id=provider_message_id,
            sent_at=utc_now(),
            metadata=metadata or {},
        )

    def create_failure_result(
        self,
        error_code: FailureCode,
        error_message: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChannelResult:
        """Create a failed channel result."""
        return ChannelResult(
            channel=self.channel_type,
            status=ChannelStatus.FAILED,
            error_code=error_code,
            error_message=error_message,
            sent_at=utc_now(),
            metadata=metadata or {},
        )

    def create_skipped_result(self, reason: str) -> ChannelResult:
        """Create a skipped result for an unconfigured or unusable channel."""
        return ChannelResult(
            channel=self.channel_type,
            status=ChannelStatus.SKIPPED,
            error_code=FailureCode.CHANNEL_UNAVAILABLE,
            error_message=reason,
            sent_at=utc_now(),
        )


def failure_code_for_status(status_code: int) -> FailureCode:
    """Map an HTTP provider status code to a failure code."""
    if status_code == 429:
        return FailureCode.RATE_LIMITED
    if status_code in (400, 404, 422):
        return FailureCode.INVALID_ADDRESS
    if status_code in (401, 403):
        return FailureCode.BLOCKED
    if status_code == 409:
        return FailureCode.REJECTED
    if status_code in (502, 503):
        return FailureCode.CHANNEL_UNAVAILABLE
    if status_code == 504:
        return FailureCode.TIMEOUT
    if status_code >= 500:
        return FailureCode.PROVIDER_ERROR
    return FailureCode.UNKNOWN
