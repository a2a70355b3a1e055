# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Notification service: the gated entry point for parent messages.

``request_send`` runs every request through the same sequence:

1. Idempotency: a key seen before returns the messages created then.
2. Consent: the consent resolver decides which guardians may receive it.
3. Rate limits and abuse detection, on one history snapshot.
4. Content validation warnings.
5. One message per recipient guardian, queued (or held for review).

While the connectivity check reports offline, requests are captured by
the offline queue and replayed through ``submit`` on reconnect.

Example:
    service = NotificationService(store, directory, delivery, guard, offline_queue=queue)
    result = await service.request_send(
        SendRequest(
            category=MessageCategory.ATTENDANCE,
            student_id="stu_1",
            sender_id="teacher_1",
            subject="Attendance update",
            body=rendered.body,
        )
    )
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from src.core.notifications.consent import ConsentDecision, build_guardian_preferences, resolve_consent
from src.core.notifications.delivery import DeliveryEngine, queue_priority_for
from src.core.notifications.directory import GuardianDirectory
from src.core.notifications.errors import (
    AuthorizationError,
    ConcurrencyConflict,
    ConsentDenied,
    PolicyDenied,
    RateLimitDenied,
)
from src.core.notifications.labels import capabilities_for, describe_status
from src.core.notifications.models import (
    DeliveryState,
    GuardianContact,
    Message,
    MessageStatus,
    Priority,
    SendRequest,
    SendResult,
    UserRole,
    new_id,
)
from src.core.notifications.offline_queue import OfflineQueue, ReplayResult
from src.core.notifications.rate_limit import GuardDecision, RateLimitGuard, RateLimitOverride
from src.core.notifications.templates import validate_message
from src.infrastructure.audit import AuditLogger
from src.infrastructure.storage.base import NotificationStore
from src.utils.datetime import Clock, utc_now
from src.utils.logging import log_context

logger = logging.getLogger(__name__)

_ADMIN_ROLES = frozenset({UserRole.SCHOOL_ADMIN, UserRole.PLATFORM_ADMIN, UserRole.SYSTEM})


@dataclass
class BulkSendOutcome:
    """Result of one request within a bulk send."""

    request: SendRequest
    result: SendResult | None = None
    error: PolicyDenied | None = None

    @property
    def accepted(self) -> bool:
        return self.result is not None


class NotificationService:
    """Gates, creates and manages parent messages.

    Attributes:
        delivery: Delivery engine executing the state machine.
        guard: Rate limit and abuse guard.
    """

    def __init__(
        self,
        store: NotificationStore,
        directory: GuardianDirectory,
        delivery: DeliveryEngine,
        guard: RateLimitGuard,
        offline_queue: OfflineQueue | None = None,
        audit: AuditLogger | None = None,
        clock: Clock = utc_now,
        is_online: Callable[[], bool] | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self.delivery = delivery
        self.guard = guard
        self._offline_queue = offline_queue
        self._audit = audit
        self._clock = clock
        self._is_online = is_online or (lambda: True)

    # Sending

    async def request_send(self, request: SendRequest) -> SendResult:
        """Gate and enqueue a send request, or buffer it while offline.

        Raises:
            AuthorizationError: A non-admin sender used the emergency category.
            ConsentDenied: Consent or opt-out blocks every guardian.
            RateLimitDenied: A rate limit blocks the send.
            AbuseBlocked: Abuse detection auto-blocked the send.
        """
        with log_context(
            sender_id=request.sender_id,
            student_id=request.student_id,
            category=request.category.value,
        ):
            self._check_sender(request)
            if self._offline_queue is not None and not self._is_online():
                item = await self._offline_queue.enqueue(request)
                return SendResult(
                    message_ids=[],
                    state=DeliveryState.IDLE,
                    queued_offline=True,
                    offline_item_id=item.id,
                )
            return await self.submit(request)

    async def submit(self, request: SendRequest) -> SendResult:
        """The online send path; also used to replay offline items."""
        self._check_sender(request)
        if request.idempotency_key:
            existing = await self._store.find_by_idempotency_key(request.idempotency_key)
            if existing:
                logger.info(
                    "Request %s already submitted as %d messages",
                    request.idempotency_key,
                    len(existing),
                )
                return _duplicate_result(existing)

        guardians = await self._directory.get_guardians(request.student_id)
        if request.guardian_ids is not None:
            wanted = set(request.guardian_ids)
            guardians = [g for g in guardians if g.guardian_id in wanted]
        if request.is_emergency:
            guardians = [g for g in guardians if g.eligible_for_emergency]

        consent = await self._check_consent(request, guardians)
        recipients = [g for g in guardians if g.guardian_id in consent.recipients]
        recipient_ids = [g.guardian_id for g in recipients]

        warnings: list[str] = []
        flags: list[str] = []
        review = False
        if not request.is_emergency:
            decision = await self._check_rate_limits(request, recipient_ids)
            review = decision.requires_review
            flags = decision.flags
            warnings.extend(decision.reasons)

        validation = validate_message(
            request.body,
            request.category,
            require_greeting=False,
            require_closing=False,
            max_length=self.guard.abuse.max_body_length,
        )
        warnings.extend(issue.message for issue in validation.issues if issue.message not in warnings)

        messages = [self._build_message(request, guardian, flags) for guardian in recipients]
        try:
            stored = await self.delivery.submit(messages, review=review)
        except ConcurrencyConflict:
            if not request.idempotency_key:
                raise
            existing = await self._store.find_by_idempotency_key(request.idempotency_key)
            if not existing:
                raise
            logger.info("Concurrent submission of %s detected", request.idempotency_key)
            return _duplicate_result(existing)

        state = DeliveryState.PENDING if review else DeliveryState.QUEUED
        logger.info(
            "Accepted %s request from %s for student %s: %d messages (%s)",
            request.category.value,
            request.sender_id,
            request.student_id,
            len(stored),
            state.value,
        )
        return SendResult(
            message_ids=[m.id for m in stored],
            state=state,
            requires_review=review,
            warnings=warnings,
        )

    async def request_bulk_send(self, requests: list[SendRequest]) -> list[BulkSendOutcome]:
        """Send several requests; policy denials are reported per request.

        Raises:
            RateLimitDenied: More requests than the bulk recipient limit.
        """
        limit = self.guard.limits.max_bulk_recipients
        if len(requests) > limit:
            raise RateLimitDenied(
                f"Bulk sends are limited to {limit} recipients",
                code="bulk_limit",
                current_usage=len(requests),
                limit=limit,
            )
        outcomes: list[BulkSendOutcome] = []
        for request in requests:
            try:
                outcomes.append(BulkSendOutcome(request, result=await self.request_send(request)))
            except PolicyDenied as e:
                outcomes.append(BulkSendOutcome(request, error=e))
        return outcomes

    def _check_sender(self, request: SendRequest) -> None:
        # The emergency category is admin-only.
        if request.is_emergency:
            self._require_admin("send emergency notices", request.sender_role)

    async def _check_consent(self, request: SendRequest, guardians: list[GuardianContact]) -> ConsentDecision:
        guardian_ids = [g.guardian_id for g in guardians]
        consents = await self._directory.get_consents(guardian_ids)
        opt_outs = await self._directory.get_opt_outs(guardian_ids)
        preferences = build_guardian_preferences(
            request.category,
            request.student_id,
            guardians,
            consents,
            opt_outs,
            self._clock(),
        )
        decision = resolve_consent(
            request.category,
            preferences,
            is_emergency=request.is_emergency,
            is_manual_teacher_message=request.is_manual and request.sender_role is UserRole.TEACHER,
        )
        if decision.allowed and decision.recipients:
            return decision

        reason = decision.reason if not decision.allowed else "no linked guardians"
        await self._record_denial(request, "consent", reason)
        raise ConsentDenied(
            reason,
            code=decision.reason_code.name.lower(),
            clarity=decision.clarity.value,
            follow_up=decision.follow_up.value if decision.follow_up else None,
        )

    async def _check_rate_limits(self, request: SendRequest, guardian_ids: list[str]) -> GuardDecision:
        now = self._clock()
        history = await self._store.get_history_snapshot(
            request.sender_id,
            request.student_id,
            self.guard.history_start(now),
        )
        override = await self._store.get_active_override(request.sender_id, now)
        decision = self.guard.evaluate(request, guardian_ids, history, now, override)
        if not decision.allowed:
            error = decision.to_exception()
            await self._record_denial(request, error.code, error.reason)
            raise error
        return decision

    async def _record_denial(self, request: SendRequest, code: str, reason: str) -> None:
        logger.info(
            "Send by %s for student %s denied (%s): %s",
            request.sender_id,
            request.student_id,
            code,
            reason,
        )
        if self._audit is not None:
            await self._audit.record(
                "message.denied",
                entity_type="send_request",
                entity_id=request.idempotency_key or request.student_id,
                actor_id=request.sender_id,
                data={"code": code, "reason": reason, "category": request.category.value},
            )

    def _build_message(self, request: SendRequest, guardian: GuardianContact, flags: list[str]) -> Message:
        now = self._clock()
        return Message(
            id=new_id("msg"),
            category=request.category,
            student_id=request.student_id,
            guardian_id=guardian.guardian_id,
            sender_id=request.sender_id,
            sender_role=request.sender_role,
            subject=request.subject,
            body=request.body,
            created_at=now,
            updated_at=now,
            priority=request.priority,
            queue_priority=queue_priority_for(request.priority),
            addresses=guardian.addresses(self.delivery.channel_order),
            idempotency_key=request.idempotency_key,
            is_manual=request.is_manual,
            abuse_flags=list(flags),
        )

    async def replay_offline(self) -> ReplayResult:
        """Replay buffered requests through the online send path."""
        if self._offline_queue is None:
            return ReplayResult()
        return await self._offline_queue.replay(self.submit)

    # Status and manual operations

    async def get_message_status(self, message_id: str) -> MessageStatus:
        return await self.delivery.get_status(message_id)

    async def describe_message_status(self, message_id: str, role: UserRole) -> dict[str, Any]:
        """Status as shown to ``role``."""
        return describe_status(await self.delivery.get_status(message_id), role)

    async def recall_message(self, message_id: str, actor_id: str | None = None) -> Message:
        """Recall an unsent message within the recall window.

        Raises:
            RecallDenied: The message is already sending or the window passed.
            ConcurrencyConflict: A worker claimed the message concurrently.
        """
        return await self.delivery.recall(message_id, actor_id)

    async def retry_message(
        self,
        message_id: str,
        priority: Priority | None = None,
        actor_id: str | None = None,
        role: UserRole = UserRole.SYSTEM,
    ) -> Message:
        if not capabilities_for(role).can_resend:
            raise AuthorizationError("retry messages", role.value)
        return await self.delivery.retry(message_id, priority, actor_id)

    async def cancel_message(self, message_id: str, actor_id: str, role: UserRole) -> Message:
        if not capabilities_for(role).can_cancel:
            raise AuthorizationError("cancel messages", role.value)
        return (await self.delivery.cancel(message_id, actor_id)).message

    async def approve_message(self, message_id: str, actor_id: str, role: UserRole) -> Message:
        """Release a message held for review into the queue."""
        self._require_admin("approve messages", role)
        return await self.delivery.approve(message_id, actor_id)

    async def reject_message(self, message_id: str, actor_id: str, role: UserRole) -> Message:
        """Cancel a held message; counts as a rejection against its sender."""
        self._require_admin("reject messages", role)
        return await self.delivery.reject(message_id, actor_id)

    async def confirm_delivery(self, message_id: str) -> Message:
        return (await self.delivery.confirm_delivery(message_id)).message

    async def grant_override(
        self,
        sender_id: str,
        granted_by: str,
        role: UserRole,
        reason: str,
        duration: timedelta = timedelta(hours=24),
        multiplier: float | None = None,
    ) -> RateLimitOverride:
        """Raise a sender's caps for a limited time. Audit-logged."""
        self._require_admin("grant rate limit overrides", role)
        now = self._clock()
        override = await self._store.save_override(
            RateLimitOverride(
                sender_id=sender_id,
                multiplier=multiplier or self.guard.limits.admin_override_multiplier,
                reason=reason,
                granted_by=granted_by,
                granted_at=now,
                expires_at=now + duration,
            )
        )
        logger.info(
            "Rate limit override x%s for %s granted by %s until %s",
            override.multiplier,
            sender_id,
            granted_by,
            override.expires_at.isoformat(),
        )
        if self._audit is not None:
            await self._audit.record(
                "rate_limit.override_granted",
                entity_type="sender",
                entity_id=sender_id,
                actor_id=granted_by,
                data={
                    "multiplier": override.multiplier,
                    "reason": reason,
                    "expires_at": override.expires_at.isoformat(),
                },
            )
        return override

    def _require_admin(self, action: str, role: UserRole) -> None:
        if role not in _ADMIN_ROLES:
            raise AuthorizationError(action, role.value)


def _duplicate_result(messages: list[Message]) -> SendResult:
    states = {m.state for m in messages}
    return SendResult(
        message_ids=[m.id for m in messages],
        state=states.pop() if len(states) == 1 else messages[0].state,
        duplicate=True,
    )
