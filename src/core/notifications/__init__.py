# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Parent notification delivery and safety core.

This package re-exports the pure building blocks: domain models, errors,
template rendering and validation, consent resolution, rate limiting,
the guardian directory interface and role labels.

The engines depend on infrastructure and are imported from their own
modules:

    from src.core.notifications.delivery import DeliveryEngine
    from src.core.notifications.emergency import EmergencyEngine
    from src.core.notifications.offline_queue import OfflineQueue
    from src.core.notifications.service import NotificationService
"""

from src.core.notifications.consent import (
    CATEGORY_CONSENT_CONFIG,
    ConflictStrategy,
    ConsentDecision,
    ConsentReason,
    ConsentRecord,
    ConsentStatus,
    GuardianPreference,
    OptOutRecord,
    OptOutScope,
    build_guardian_preferences,
    resolve_consent,
)
from src.core.notifications.directory import GuardianDirectory, InMemoryGuardianDirectory
from src.core.notifications.errors import (
    AbuseBlocked,
    AuditFailure,
    AuthorizationError,
    ConcurrencyConflict,
    ConsentDenied,
    EmergencyNotFoundError,
    EscalationLimitError,
    InvalidTransitionError,
    MessageLockedError,
    MessageNotFoundError,
    NotFoundError,
    NotificationError,
    OfflineItemNotFoundError,
    OfflineQueueFullError,
    PolicyDenied,
    RateLimitDenied,
    RecallDenied,
    TemplateRenderError,
    TerminalDeliveryFailure,
    TransientDeliveryFailure,
)
from src.core.notifications.labels import capabilities_for, describe_status, status_label
from src.core.notifications.models import (
    AckMethod,
    Acknowledgment,
    Channel,
    DeliveryAttempt,
    DeliveryState,
    DeliveryStats,
    EmergencyContext,
    EmergencyDetails,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    FailureCode,
    GuardianContact,
    Message,
    MessageCategory,
    MessageStatus,
    OfflineQueueItem,
    Priority,
    SendRequest,
    SendResult,
    UserRole,
)
from src.core.notifications.rate_limit import (
    GuardDecision,
    RateLimitGuard,
    RateLimitOverride,
)
from src.core.notifications.templates import (
    MessageTemplate,
    RenderedMessage,
    TemplateCatalog,
    find_placeholders,
    get_default_catalog,
    render_template,
    sanitize_message,
    validate_message,
)

__all__ = [
    # Models
    "AckMethod",
    "Acknowledgment",
    "Channel",
    "DeliveryAttempt",
    "DeliveryState",
    "DeliveryStats",
    "EmergencyContext",
    "EmergencyDetails",
    "EmergencySeverity",
    "EmergencyState",
    "EmergencyType",
    "FailureCode",
    "GuardianContact",
    "Message",
    "MessageCategory",
    "MessageStatus",
    "OfflineQueueItem",
    "Priority",
    "SendRequest",
    "SendResult",
    "UserRole",
    # Errors
    "AbuseBlocked",
    "AuditFailure",
    "AuthorizationError",
    "ConcurrencyConflict",
    "ConsentDenied",
    "EmergencyNotFoundError",
    "EscalationLimitError",
    "InvalidTransitionError",
    "MessageLockedError",
    "MessageNotFoundError",
    "NotFoundError",
    "NotificationError",
    "OfflineItemNotFoundError",
    "OfflineQueueFullError",
    "PolicyDenied",
    "RateLimitDenied",
    "RecallDenied",
    "TemplateRenderError",
    "TerminalDeliveryFailure",
    "TransientDeliveryFailure",
    # Templates
    "MessageTemplate",
    "RenderedMessage",
    "TemplateCatalog",
    "find_placeholders",
    "get_default_catalog",
    "render_template",
    "sanitize_message",
    "validate_message",
    # Consent
    "CATEGORY_CONSENT_CONFIG",
    "ConflictStrategy",
    "ConsentDecision",
    "ConsentReason",
    "ConsentRecord",
    "ConsentStatus",
    "GuardianPreference",
    "OptOutRecord",
    "OptOutScope",
    "build_guardian_preferences",
    "resolve_consent",
    # Rate limiting
    "GuardDecision",
    "RateLimitGuard",
    "RateLimitOverride",
    # Directory and labels
    "GuardianDirectory",
    "InMemoryGuardianDirectory",
    "capabilities_for",
    "describe_status",
    "status_label",
]
