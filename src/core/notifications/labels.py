# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Role-dependent presentation of delivery states.

The underlying state is the same for every viewer. Teachers see soft
wording, school admins see actionable wording and platform admins see
internal detail. Capabilities say which manual controls a role gets.
"""

from dataclasses import dataclass

from src.core.notifications.models import DeliveryState, MessageStatus, UserRole


@dataclass(frozen=True)
class StatusLabel:
    label: str
    description: str
    tone: str = "neutral"


@dataclass(frozen=True)
class RoleCapabilities:
    can_resend: bool = False
    can_cancel: bool = False
    can_recall: bool = False
    can_view_attempts: bool = False
    can_view_error_codes: bool = False


_TEACHER_LABELS: dict[DeliveryState, StatusLabel] = {
    DeliveryState.IDLE: StatusLabel("Draft", "Not sent yet"),
    DeliveryState.PENDING: StatusLabel("Awaiting Review", "A school admin will review this message"),
    DeliveryState.QUEUED: StatusLabel("Sending Soon", "Your message is on its way"),
    DeliveryState.SENDING: StatusLabel("Sending", "Your message is on its way"),
    DeliveryState.SENT: StatusLabel("Sent", "Your message was sent", "positive"),
    DeliveryState.DELIVERED: StatusLabel("Delivered", "The parent received your message", "positive"),
    DeliveryState.FAILED: StatusLabel("Pending Delivery", "We are still trying to reach the parent"),
    DeliveryState.EXHAUSTED: StatusLabel("Pending Delivery", "The school office will follow up"),
    DeliveryState.CANCELLED: StatusLabel("Cancelled", "This message was not sent"),
}

_SCHOOL_ADMIN_LABELS: dict[DeliveryState, StatusLabel] = {
    **_TEACHER_LABELS,
    DeliveryState.PENDING: StatusLabel("Needs Review", "Flagged by abuse detection", "warning"),
    DeliveryState.FAILED: StatusLabel("Retrying", "Attempt failed, trying the next channel", "warning"),
    DeliveryState.EXHAUSTED: StatusLabel(
        "Requires Attention", "All channels failed; retry or contact the parent directly", "critical"
    ),
}

_PLATFORM_ADMIN_LABELS: dict[DeliveryState, StatusLabel] = {
    **_SCHOOL_ADMIN_LABELS,
    DeliveryState.QUEUED: StatusLabel("Queued", "Waiting for the queue processor"),
    DeliveryState.FAILED: StatusLabel("Failed - Retrying", "Channel attempt failed", "warning"),
    DeliveryState.EXHAUSTED: StatusLabel("Failed - Internal", "Retry budget exhausted", "critical"),
}

ROLE_LABELS: dict[UserRole, dict[DeliveryState, StatusLabel]] = {
    UserRole.TEACHER: _TEACHER_LABELS,
    UserRole.SCHOOL_ADMIN: _SCHOOL_ADMIN_LABELS,
    UserRole.PLATFORM_ADMIN: _PLATFORM_ADMIN_LABELS,
    UserRole.SYSTEM: _PLATFORM_ADMIN_LABELS,
}

ROLE_CAPABILITIES: dict[UserRole, RoleCapabilities] = {
    UserRole.TEACHER: RoleCapabilities(can_recall=True),
    UserRole.SCHOOL_ADMIN: RoleCapabilities(
        can_resend=True, can_cancel=True, can_recall=True, can_view_attempts=True
    ),
    UserRole.PLATFORM_ADMIN: RoleCapabilities(
        can_resend=True,
        can_cancel=True,
        can_recall=True,
        can_view_attempts=True,
        can_view_error_codes=True,
    ),
    UserRole.SYSTEM: RoleCapabilities(
        can_resend=True,
        can_cancel=True,
        can_recall=True,
        can_view_attempts=True,
        can_view_error_codes=True,
    ),
}


def status_label(state: DeliveryState, role: UserRole) -> StatusLabel:
    return ROLE_LABELS[role][state]


def capabilities_for(role: UserRole) -> RoleCapabilities:
    return ROLE_CAPABILITIES[role]


def describe_status(status: MessageStatus, role: UserRole) -> dict[str, object]:
    """Status display for one viewer; hides error codes from roles that may not see them."""
    label = status_label(status.state, role)
    caps = capabilities_for(role)
    view: dict[str, object] = {
        "message_id": status.message_id,
        "label": label.label,
        "description": label.description,
        "tone": label.tone,
        "can_resend": caps.can_resend and status.state in (DeliveryState.EXHAUSTED, DeliveryState.FAILED),
        "can_cancel": caps.can_cancel and not status.locked and status.state in (
            DeliveryState.IDLE,
            DeliveryState.PENDING,
            DeliveryState.QUEUED,
        ),
    }
    if caps.can_view_attempts:
        view["attempts"] = status.attempts
        view["channel"] = status.channel.value if status.channel else None
        view["next_retry_at"] = status.next_retry_at.isoformat() if status.next_retry_at else None
    if caps.can_view_error_codes:
        view["error_code"] = status.last_error_code
    return view
