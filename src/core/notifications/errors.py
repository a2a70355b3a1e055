# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Exception hierarchy for the notification core.

Policy denials and concurrency conflicts are returned to callers with a
human-readable reason. Transient delivery failures stay inside the
delivery state machine. Audit failures are logged and discarded by the
audit logger.
"""

from typing import Any


class NotificationError(Exception):
    """Base exception for notification core errors."""

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class PolicyDenied(NotificationError):
    """A send or action was refused by policy.

    Attributes:
        code: Machine-readable denial code.
        reason: Human-readable reason shown to the caller.
    """

    default_code = "policy_denied"

    def __init__(self, reason: str, code: str | None = None, **details: Any) -> None:
        self.code = code or self.default_code
        self.reason = reason
        super().__init__(reason, **details)


class ConsentDenied(PolicyDenied):
    """Guardian consent or opt-out blocks the send."""

    default_code = "consent_denied"


class RateLimitDenied(PolicyDenied):
    """A sender or recipient rate limit blocks the send."""

    default_code = "rate_limited"


class AbuseBlocked(PolicyDenied):
    """Abuse detection auto-blocked the send."""

    default_code = "abuse_blocked"


class RecallDenied(PolicyDenied):
    """The message can no longer be recalled."""

    default_code = "cannot_recall"


class TransientDeliveryFailure(NotificationError):
    """A channel attempt failed but may succeed on retry or fallback."""

    def __init__(self, channel: str, error_code: str, message: str = "") -> None:
        self.channel = channel
        self.error_code = error_code
        super().__init__(
            message or f"Delivery via {channel} failed ({error_code})",
            channel=channel,
            error_code=error_code,
        )


class TerminalDeliveryFailure(NotificationError):
    """All channels are exhausted for a message."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(
            f"Message {message_id} requires attention: all channels exhausted",
            message_id=message_id,
        )


class ConcurrencyConflict(NotificationError):
    """A write lost the race against a concurrent update of the same entity."""

    user_message = "action no longer possible"

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{entity} {entity_id} was modified concurrently: {self.user_message}",
            entity=entity,
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )


class InvalidTransitionError(NotificationError):
    """An event is not valid in the current state of a state machine."""

    def __init__(self, machine: str, state: str, event: str, reason: str = "") -> None:
        self.machine = machine
        self.state = state
        self.event = event
        text = f"Invalid {machine} transition: '{event}' from state '{state}'"
        if reason:
            text = f"{text} ({reason})"
        super().__init__(text, machine=machine, state=state, event=event)


class MessageLockedError(InvalidTransitionError):
    """A locked message cannot be mutated."""

    def __init__(self, message_id: str, state: str, event: str) -> None:
        self.message_id = message_id
        super().__init__("message", state, event, reason=f"message {message_id} is locked")


class EscalationLimitError(InvalidTransitionError):
    """Manual escalation would exceed the maximum escalation level."""

    def __init__(self, emergency_id: str, level: int, max_level: int) -> None:
        self.emergency_id = emergency_id
        self.level = level
        self.max_level = max_level
        super().__init__(
            "emergency",
            "escalating",
            "escalate",
            reason=f"level {level} is already the maximum of {max_level}",
        )


class AuthorizationError(NotificationError):
    """The actor's role does not permit the requested action."""

    def __init__(self, action: str, role: str) -> None:
        self.action = action
        self.role = role
        super().__init__(f"Role '{role}' is not allowed to {action}", action=action, role=role)


class NotFoundError(NotificationError):
    """A requested entity does not exist."""

    entity = "entity"

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found", entity_id=entity_id)


class MessageNotFoundError(NotFoundError):
    entity = "Message"


class EmergencyNotFoundError(NotFoundError):
    entity = "Emergency"


class AuditFailure(NotificationError):
    """An audit sink failed to record an event."""


class TemplateRenderError(NotificationError):
    """Strict template rendering found missing variables."""

    def __init__(self, template_id: str, missing: list[str]) -> None:
        self.template_id = template_id
        self.missing = missing
        super().__init__(
            f"Template '{template_id}' is missing variables: {', '.join(missing)}",
            template_id=template_id,
            missing=missing,
        )


class OfflineQueueFullError(NotificationError):
    """The offline queue is at capacity and the new item does not outrank any queued item."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        super().__init__(f"Offline queue is full ({max_size} items)", max_size=max_size)


class OfflineItemNotFoundError(NotFoundError):
    entity = "Offline queue item"
