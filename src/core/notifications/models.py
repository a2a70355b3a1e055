# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain types for parent notification delivery.

Messages, delivery attempts, emergencies, acknowledgments and offline
queue items are plain dataclasses. Stores hand out copies; every write
goes through a store with the version the caller read.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier, e.g. ``msg_3f2a...``."""
    return f"{prefix}_{uuid4().hex}"


class MessageCategory(str, Enum):
    """Categories of parent communication."""

    ATTENDANCE = "attendance_notice"
    LEARNING_UPDATE = "learning_update"
    ANNOUNCEMENT = "school_announcement"
    FEE_STATUS = "fee_status"
    EMERGENCY = "emergency_notice"


class Channel(str, Enum):
    """Communication channels, declared in default rank order."""

    RICH_MESSAGING = "rich_messaging"
    SMS = "sms"
    EMAIL = "email"


DEFAULT_CHANNEL_ORDER: tuple[Channel, ...] = (
    Channel.RICH_MESSAGING,
    Channel.SMS,
    Channel.EMAIL,
)


class Priority(str, Enum):
    """Delivery priority; selects the retry configuration."""

    EMERGENCY = "emergency"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Queue ordering score. Emergencies use their severity score instead.
PRIORITY_SCORE: dict[Priority, int] = {
    Priority.EMERGENCY: 1000,
    Priority.HIGH: 200,
    Priority.NORMAL: 100,
    Priority.LOW: 50,
}


class UserRole(str, Enum):
    """Roles that act on messages and emergencies."""

    TEACHER = "teacher"
    SCHOOL_ADMIN = "school_admin"
    PLATFORM_ADMIN = "platform_admin"
    SYSTEM = "system"


class DeliveryState(str, Enum):
    """States of the per-message delivery state machine."""

    IDLE = "idle"
    PENDING = "pending"
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class FailureCode(str, Enum):
    """Why a channel attempt failed."""

    CHANNEL_UNAVAILABLE = "CH_UNAVAIL"
    RATE_LIMITED = "RATE_LIM"
    INVALID_ADDRESS = "INV_NUM"
    NETWORK_ERROR = "NET_ERR"
    PROVIDER_ERROR = "PROV_ERR"
    TIMEOUT = "TIMEOUT"
    REJECTED = "REJECTED"
    BLOCKED = "BLOCKED"
    UNKNOWN = "UNKNOWN"
    NO_CHANNEL = "NO_CHANNEL"


RECALLABLE_STATES = frozenset({DeliveryState.IDLE, DeliveryState.QUEUED, DeliveryState.PENDING})
TERMINAL_STATES = frozenset(
    {DeliveryState.DELIVERED, DeliveryState.EXHAUSTED, DeliveryState.CANCELLED}
)


@dataclass
class GuardianContact:
    """A guardian linked to a student, as supplied by the directory.

    Attributes:
        guardian_id: Guardian identifier.
        student_id: Linked student.
        name: Display name.
        rich_messaging_handle: Handle on the rich messaging channel.
        phone: Phone number for SMS.
        email: Email address.
        is_primary: Whether this guardian is the primary contact.
        eligible_for_emergency: Per-link flag for emergency broadcasts.
        is_secondary_contact: Alternate contact reached only by escalation.
    """

    guardian_id: str
    student_id: str
    name: str = ""
    rich_messaging_handle: str | None = None
    phone: str | None = None
    email: str | None = None
    is_primary: bool = False
    eligible_for_emergency: bool = True
    is_secondary_contact: bool = False

    def address_for(self, channel: Channel) -> str | None:
        if channel is Channel.RICH_MESSAGING:
            return self.rich_messaging_handle
        if channel is Channel.SMS:
            return self.phone
        return self.email

    def addresses(self, order: tuple[Channel, ...] | list[Channel] = DEFAULT_CHANNEL_ORDER) -> dict[Channel, str]:
        """Channel addresses this guardian has, in rank order."""
        result: dict[Channel, str] = {}
        for channel in order:
            address = self.address_for(channel)
            if address:
                result[channel] = address
        return result


@dataclass
class DeliveryAttempt:
    """One channel try for one message. Append-only."""

    attempt_number: int
    channel: Channel
    started_at: datetime
    ended_at: datetime | None = None
    success: bool = False
    error_code: str | None = None
    error_message: str | None = None
    latency_ms: int | None = None
    provider_message_id: str | None = None


@dataclass
class Message:
    """One outbound communication to one guardian.

    ``addresses`` snapshots the guardian's channel addresses in rank order
    when the message is created; channel fallback only walks these.
    """

    id: str
    category: MessageCategory
    student_id: str
    guardian_id: str
    sender_id: str
    subject: str
    body: str
    created_at: datetime
    updated_at: datetime
    sender_role: UserRole = UserRole.TEACHER
    priority: Priority = Priority.NORMAL
    queue_priority: int = PRIORITY_SCORE[Priority.NORMAL]
    state: DeliveryState = DeliveryState.IDLE
    addresses: dict[Channel, str] = field(default_factory=dict)
    channel: Channel | None = None
    attempt_count: int = 0
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    # Attempts before this index belong to an earlier, manually retried run.
    attempt_offset: int = 0
    next_retry_at: datetime | None = None
    locked: bool = False
    version: int = 0
    idempotency_key: str | None = None
    emergency_id: str | None = None
    is_manual: bool = False
    abuse_flags: list[str] = field(default_factory=list)
    last_error_code: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    rejected_at: datetime | None = None

    @property
    def content_hash(self) -> str:
        return content_hash(self.subject, self.body)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def current_attempts(self) -> list[DeliveryAttempt]:
        return self.attempts[self.attempt_offset:]

    def attempts_on(self, channel: Channel) -> int:
        return sum(1 for attempt in self.current_attempts() if attempt.channel == channel)

    def attempted_channels(self) -> set[Channel]:
        return {attempt.channel for attempt in self.current_attempts()}

    def status(self) -> "MessageStatus":
        return MessageStatus(
            message_id=self.id,
            state=self.state,
            channel=self.channel,
            attempts=self.attempt_count,
            next_retry_at=self.next_retry_at,
            locked=self.locked,
            last_error_code=self.last_error_code,
        )


@dataclass(frozen=True)
class MessageStatus:
    """Snapshot of a message for status displays."""

    message_id: str
    state: DeliveryState
    channel: Channel | None
    attempts: int
    next_retry_at: datetime | None
    locked: bool = False
    last_error_code: str | None = None


@dataclass
class SendRequest:
    """A caller's request to notify the guardians of one student.

    Attributes:
        category: Message category.
        student_id: Student the message is about.
        sender_id: Sending user.
        subject: Rendered subject.
        body: Rendered body.
        sender_role: Role of the sender.
        priority: Delivery priority.
        is_manual: Authored by a teacher rather than an automated trigger.
        idempotency_key: Deduplication key; replays with the same key
            return the messages created the first time.
        guardian_ids: Optional subset of linked guardians to address.
    """

    category: MessageCategory
    student_id: str
    sender_id: str
    subject: str
    body: str
    sender_role: UserRole = UserRole.TEACHER
    priority: Priority = Priority.NORMAL
    is_manual: bool = False
    idempotency_key: str | None = None
    guardian_ids: list[str] | None = None

    @property
    def is_emergency(self) -> bool:
        return self.category is MessageCategory.EMERGENCY

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "student_id": self.student_id,
            "sender_id": self.sender_id,
            "subject": self.subject,
            "body": self.body,
            "sender_role": self.sender_role.value,
            "priority": self.priority.value,
            "is_manual": self.is_manual,
            "idempotency_key": self.idempotency_key,
            "guardian_ids": self.guardian_ids,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SendRequest":
        return cls(
            category=MessageCategory(payload["category"]),
            student_id=payload["student_id"],
            sender_id=payload["sender_id"],
            subject=payload["subject"],
            body=payload["body"],
            sender_role=UserRole(payload.get("sender_role", UserRole.TEACHER.value)),
            priority=Priority(payload.get("priority", Priority.NORMAL.value)),
            is_manual=payload.get("is_manual", False),
            idempotency_key=payload.get("idempotency_key"),
            guardian_ids=payload.get("guardian_ids"),
        )


@dataclass
class SendResult:
    """Outcome of an accepted send request."""

    message_ids: list[str]
    state: DeliveryState
    queued_offline: bool = False
    offline_item_id: str | None = None
    duplicate: bool = False
    requires_review: bool = False
    warnings: list[str] = field(default_factory=list)


# Emergencies


class EmergencyType(str, Enum):
    SCHOOL_CLOSURE = "school_closure"
    SAFETY_INCIDENT = "safety_incident"
    WEATHER_DISRUPTION = "weather_disruption"
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"


class EmergencySeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    ELEVATED = "elevated"


EMERGENCY_PRIORITY: dict[str, int] = {
    "critical": 1000,
    "high": 900,
    "elevated": 800,
    "normal": 100,
}


class EmergencyState(str, Enum):
    INITIATED = "initiated"
    BROADCASTING = "broadcasting"
    ESCALATING = "escalating"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


@dataclass
class EmergencyDetails:
    """What happened, as entered by the initiating admin."""

    type: EmergencyType
    title: str
    description: str
    severity: EmergencySeverity | None = None
    school_name: str = ""
    reason: str = ""
    date: str = ""
    affected_areas: list[str] = field(default_factory=list)
    infrastructure_type: str | None = None
    expected_resolution: str | None = None
    action_required: str | None = None
    safety_instructions: list[str] = field(default_factory=list)

    def template_variables(self) -> dict[str, Any]:
        return {
            "school_name": self.school_name,
            "title": self.title,
            "description": self.description,
            "reason": self.reason or self.title,
            "date": self.date,
            "affected_areas": ", ".join(self.affected_areas) if self.affected_areas else None,
            "infrastructure_type": self.infrastructure_type,
            "expected_resolution": self.expected_resolution,
            "action_required": self.action_required,
            "safety_instructions": self.safety_instructions or None,
        }


@dataclass
class EmergencyContext:
    """One active or closed incident and its aggregate delivery counters."""

    id: str
    school_id: str
    details: EmergencyDetails
    severity: EmergencySeverity
    initiated_by: str
    initiated_at: datetime
    updated_at: datetime
    requires_acknowledgment: bool
    channels: list[Channel]
    student_ids: list[str] | None = None
    initiator_role: UserRole = UserRole.SCHOOL_ADMIN
    state: EmergencyState = EmergencyState.INITIATED
    subject: str = ""
    body: str = ""
    # Guardians reached by the broadcast, snapshotted when it starts.
    recipient_ids: list[str] = field(default_factory=list)
    total_recipients: int = 0
    total_messages: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    failed_count: int = 0
    acknowledged_count: int = 0
    pending_acks: int = 0
    escalation_level: int = 0
    last_escalation_at: datetime | None = None
    broadcast_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in (EmergencyState.RESOLVED, EmergencyState.CANCELLED)


class AckMethod(str, Enum):
    REPLY = "reply"
    BUTTON = "button"
    LINK = "link"
    AUTO = "auto"


@dataclass
class Acknowledgment:
    """One guardian's confirmation of an emergency. Append-only."""

    id: str
    emergency_id: str
    guardian_id: str
    acknowledged_at: datetime
    channel: str
    method: AckMethod = AckMethod.BUTTON
    student_id: str | None = None


@dataclass
class DeliveryStats:
    total: int = 0
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    acknowledged: int = 0
    ack_rate: int = 0


# Offline queue


@dataclass
class OfflineQueueItem:
    """A send request captured while the network was unavailable.

    The item id doubles as the idempotency key of the replayed request.
    """

    id: str
    payload: dict[str, Any]
    priority: int
    device_id: str
    created_at: datetime
    replay_attempts: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None


# Content helpers

_WHITESPACE = re.compile(r"\s+")


def normalize_content(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().lower()


def content_hash(subject: str, body: str) -> str:
    """Hash of whitespace- and case-normalized content, for duplicate detection."""
    normalized = f"{normalize_content(subject)}\n{normalize_content(body)}"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
