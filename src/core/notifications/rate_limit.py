# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Rate limiting and abuse detection for outbound parent messages.

Counters are not stored: every evaluation derives them from one snapshot
of message history read by the caller, so all checks of one evaluation
see the same data.

Rate-limit checks are ANDed; the first denial blocks the send. Abuse
signals are OR-combined into the highest severity. An auto-blocking
signal denies the send outright; other review signals route the message
to a review step instead of blocking it.

Example:
    guard = RateLimitGuard(settings.rate_limit, settings.abuse)
    history = await store.get_history_snapshot(sender_id, student_id, guard.history_start(now))
    decision = guard.evaluate(request, guardian_ids, history, now)
    if not decision.allowed:
        raise decision.to_exception()
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from src.core.config.settings import AbuseSettings, RateLimitSettings
from src.core.notifications.errors import AbuseBlocked, PolicyDenied, RateLimitDenied
from src.core.notifications.models import DeliveryState, Message, SendRequest, content_hash
from src.core.notifications.templates import find_forbidden_phrases
from src.utils.datetime import end_of_day, end_of_week, ensure_utc, start_of_day, start_of_week

logger = logging.getLogger(__name__)

# States that count against sender caps
_SENDER_COUNTED = frozenset(DeliveryState) - {DeliveryState.IDLE, DeliveryState.CANCELLED}
# States that count against the per-student cap
_STUDENT_COUNTED = frozenset(
    {DeliveryState.QUEUED, DeliveryState.SENDING, DeliveryState.SENT, DeliveryState.DELIVERED}
)

_REPETITIVE = re.compile(r"(.)\1{10,}")
_UPPERCASE = re.compile(r"[A-Z]")


class AbuseSeverity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AbuseSeverity.NONE: 0,
    AbuseSeverity.LOW: 1,
    AbuseSeverity.MEDIUM: 2,
    AbuseSeverity.HIGH: 3,
}


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate-limit check.

    Attributes:
        check: Name of the check.
        allowed: Whether the check passed.
        reason: Human-readable denial reason.
        current_usage: Count observed in the window.
        limit: Effective limit, after any override.
        reset_at: When the window or cooldown ends.
        requires_admin_override: Whether an admin override would lift the denial.
    """

    check: str
    allowed: bool
    reason: str | None = None
    current_usage: int | None = None
    limit: int | None = None
    reset_at: datetime | None = None
    requires_admin_override: bool = False


@dataclass(frozen=True)
class AbuseSignal:
    signal: str
    severity: AbuseSeverity
    reason: str
    requires_review: bool = False
    auto_blocked: bool = False


@dataclass
class RateLimitOverride:
    """Time-bounded cap multiplier granted to a sender by an admin."""

    sender_id: str
    multiplier: float
    reason: str
    granted_by: str
    granted_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return ensure_utc(self.granted_at) <= ensure_utc(now) < ensure_utc(self.expires_at)


@dataclass
class GuardDecision:
    """Combined result of all rate-limit checks and abuse signals."""

    rate_limits: list[RateLimitResult] = field(default_factory=list)
    abuse_signals: list[AbuseSignal] = field(default_factory=list)

    @property
    def denial(self) -> RateLimitResult | None:
        return next((r for r in self.rate_limits if not r.allowed), None)

    @property
    def severity(self) -> AbuseSeverity:
        return max(
            (s.severity for s in self.abuse_signals),
            key=lambda severity: severity.rank,
            default=AbuseSeverity.NONE,
        )

    @property
    def auto_blocked(self) -> bool:
        return any(s.auto_blocked for s in self.abuse_signals)

    @property
    def requires_review(self) -> bool:
        return any(s.requires_review for s in self.abuse_signals)

    @property
    def allowed(self) -> bool:
        return self.denial is None and not self.auto_blocked

    @property
    def flags(self) -> list[str]:
        return [s.signal for s in self.abuse_signals]

    @property
    def reasons(self) -> list[str]:
        return [s.reason for s in self.abuse_signals]

    def to_exception(self) -> PolicyDenied:
        if self.auto_blocked:
            blocking = next(s for s in self.abuse_signals if s.auto_blocked)
            return AbuseBlocked(blocking.reason, code=blocking.signal, signals=self.flags)
        denial = self.denial
        if denial is None:
            raise ValueError("decision allows the send; there is nothing to raise")
        return RateLimitDenied(
            denial.reason or "rate limit reached",
            code=denial.check,
            current_usage=denial.current_usage,
            limit=denial.limit,
            reset_at=denial.reset_at,
        )


class RateLimitGuard:
    """Pre-send gate combining rate limits and abuse detection.

    Attributes:
        limits: Sender and recipient caps.
        abuse: Abuse detection thresholds.
    """

    def __init__(self, limits: RateLimitSettings, abuse: AbuseSettings) -> None:
        self.limits = limits
        self.abuse = abuse

    def history_start(self, now: datetime) -> datetime:
        """Oldest creation time any check looks at."""
        return min(
            start_of_week(now),
            ensure_utc(now) - timedelta(days=self.abuse.rejection_lookback_days),
        )

    def evaluate(
        self,
        request: SendRequest,
        guardian_ids: list[str],
        history: list[Message],
        now: datetime,
        override: RateLimitOverride | None = None,
    ) -> GuardDecision:
        """Evaluate every check against one history snapshot.

        Args:
            request: The send request.
            guardian_ids: Guardians the request would reach.
            history: Messages by this sender or about this student since
                ``history_start(now)``.
            now: Evaluation time.
            override: Active admin override for the sender, if any.

        Returns:
            GuardDecision with every check result and signal.
        """
        now = ensure_utc(now)
        active_override = override if override and override.is_active(now) else None
        sender_history = [m for m in history if m.sender_id == request.sender_id]

        decision = GuardDecision(
            rate_limits=[
                self.check_sender_daily(sender_history, now, active_override),
                self.check_sender_weekly(sender_history, now, active_override),
                self.check_min_send_interval(sender_history, now),
                self.check_student_daily(history, request.student_id, now),
                self.check_parent_cooldown(sender_history, guardian_ids, now),
            ],
            abuse_signals=[
                *self.check_rapid_fire(sender_history, now),
                *self.check_rejection_history(sender_history, now),
                *self.check_content(request),
                *self.check_duplicate_content(sender_history, request, now),
            ],
        )

        if not decision.allowed:
            logger.info(
                "Send denied for sender %s: %s",
                request.sender_id,
                decision.denial.reason if decision.denial else decision.reasons,
            )
        elif decision.abuse_signals:
            logger.info(
                "Send by %s flagged (%s): %s",
                request.sender_id,
                decision.severity.value,
                decision.flags,
            )
        return decision

    def _cap(self, base: int, override: RateLimitOverride | None) -> int:
        if override is None:
            return base
        return int(base * override.multiplier)

    def check_sender_daily(
        self,
        sender_history: list[Message],
        now: datetime,
        override: RateLimitOverride | None = None,
    ) -> RateLimitResult:
        day_start = start_of_day(now)
        count = sum(
            1
            for m in sender_history
            if m.state in _SENDER_COUNTED and ensure_utc(m.created_at) >= day_start
        )
        limit = self._cap(self.limits.teacher_daily_limit, override)
        if count >= limit:
            return RateLimitResult(
                check="sender_daily_limit",
                allowed=False,
                reason=f"Daily message limit reached ({limit} messages)",
                current_usage=count,
                limit=limit,
                reset_at=end_of_day(now),
                requires_admin_override=override is None,
            )
        return RateLimitResult("sender_daily_limit", True, current_usage=count, limit=limit)

    def check_sender_weekly(
        self,
        sender_history: list[Message],
        now: datetime,
        override: RateLimitOverride | None = None,
    ) -> RateLimitResult:
        week_start = start_of_week(now)
        count = sum(
            1
            for m in sender_history
            if m.state in _SENDER_COUNTED and ensure_utc(m.created_at) >= week_start
        )
        limit = self._cap(self.limits.teacher_weekly_limit, override)
        if count >= limit:
            return RateLimitResult(
                check="sender_weekly_limit",
                allowed=False,
                reason=f"Weekly message limit reached ({limit} messages)",
                current_usage=count,
                limit=limit,
                reset_at=end_of_week(now),
                requires_admin_override=override is None,
            )
        return RateLimitResult("sender_weekly_limit", True, current_usage=count, limit=limit)

    def check_min_send_interval(self, sender_history: list[Message], now: datetime) -> RateLimitResult:
        last = max(
            (ensure_utc(m.created_at) for m in sender_history if m.state is not DeliveryState.IDLE),
            default=None,
        )
        interval = timedelta(seconds=self.limits.min_send_interval_seconds)
        if last is not None and now - last < interval:
            return RateLimitResult(
                check="min_send_interval",
                allowed=False,
                reason="Please wait a moment before sending another message",
                reset_at=last + interval,
            )
        return RateLimitResult("min_send_interval", True)

    def check_student_daily(self, history: list[Message], student_id: str, now: datetime) -> RateLimitResult:
        day_start = start_of_day(now)
        count = sum(
            1
            for m in history
            if m.student_id == student_id
            and m.state in _STUDENT_COUNTED
            and ensure_utc(m.created_at) >= day_start
        )
        limit = self.limits.student_daily_limit
        if count >= limit:
            return RateLimitResult(
                check="student_daily_limit",
                allowed=False,
                reason="Student has received maximum messages for today",
                current_usage=count,
                limit=limit,
                reset_at=end_of_day(now),
            )
        return RateLimitResult("student_daily_limit", True, current_usage=count, limit=limit)

    def check_parent_cooldown(
        self,
        sender_history: list[Message],
        guardian_ids: list[str],
        now: datetime,
    ) -> RateLimitResult:
        cooldown = timedelta(minutes=self.limits.same_parent_cooldown_minutes)
        targets = set(guardian_ids)
        last = max(
            (
                ensure_utc(m.created_at)
                for m in sender_history
                if m.guardian_id in targets and m.state in _SENDER_COUNTED
            ),
            default=None,
        )
        if last is not None and now - last < cooldown:
            return RateLimitResult(
                check="parent_cooldown",
                allowed=False,
                reason="Please wait before sending another message to this parent",
                reset_at=last + cooldown,
            )
        return RateLimitResult("parent_cooldown", True)

    def check_rapid_fire(self, sender_history: list[Message], now: datetime) -> list[AbuseSignal]:
        window_start = now - timedelta(minutes=self.abuse.rapid_fire_window_minutes)
        count = sum(
            1
            for m in sender_history
            if m.state is not DeliveryState.IDLE and ensure_utc(m.created_at) >= window_start
        )
        if count >= self.abuse.rapid_fire_count:
            return [
                AbuseSignal(
                    signal="rapid_fire",
                    severity=AbuseSeverity.MEDIUM,
                    reason=f"{count} messages in {self.abuse.rapid_fire_window_minutes} minutes",
                    requires_review=True,
                )
            ]
        return []

    def check_rejection_history(self, sender_history: list[Message], now: datetime) -> list[AbuseSignal]:
        since = now - timedelta(days=self.abuse.rejection_lookback_days)
        rejections = sum(
            1 for m in sender_history if m.rejected_at is not None and ensure_utc(m.rejected_at) >= since
        )
        threshold = self.abuse.rejection_threshold
        if rejections >= threshold:
            return [
                AbuseSignal(
                    signal="rejection_history",
                    severity=AbuseSeverity.MEDIUM,
                    reason=f"{rejections} recent message rejections",
                    requires_review=True,
                    auto_blocked=rejections >= threshold * 2,
                )
            ]
        return []

    def check_content(self, request: SendRequest) -> list[AbuseSignal]:
        subject, body = request.subject, request.body
        signals: list[AbuseSignal] = []

        if len(body) > self.abuse.max_body_length:
            signals.append(AbuseSignal("body_too_long", AbuseSeverity.LOW, "Message exceeds maximum length"))
        if len(subject) > self.abuse.max_subject_length:
            signals.append(AbuseSignal("subject_too_long", AbuseSeverity.LOW, "Subject exceeds maximum length"))
        if not body.strip() or not subject.strip():
            signals.append(
                AbuseSignal("empty_content", AbuseSeverity.MEDIUM, "Message or subject is empty", requires_review=True)
            )
        if _REPETITIVE.search(body) or _REPETITIVE.search(subject):
            signals.append(
                AbuseSignal(
                    "repetitive_characters",
                    AbuseSeverity.MEDIUM,
                    "Detected repetitive characters (potential spam)",
                    requires_review=True,
                )
            )
        if len(body) > 20 and len(_UPPERCASE.findall(body)) / len(body) > 0.5:
            signals.append(AbuseSignal("all_caps", AbuseSeverity.LOW, "Message appears to be in all caps"))

        phrases = find_forbidden_phrases(f"{subject}\n{body}", request.category)
        if phrases:
            listed = ", ".join(sorted({p.phrase for p in phrases}))
            signals.append(
                AbuseSignal(
                    "forbidden_phrase",
                    AbuseSeverity.MEDIUM,
                    f"Disallowed language: {listed}",
                    requires_review=True,
                )
            )
        return signals

    def check_duplicate_content(
        self,
        sender_history: list[Message],
        request: SendRequest,
        now: datetime,
    ) -> list[AbuseSignal]:
        since = now - timedelta(hours=self.abuse.duplicate_window_hours)
        digest = content_hash(request.subject, request.body)
        duplicate = any(
            m.content_hash == digest
            and m.student_id == request.student_id
            and m.state is not DeliveryState.IDLE
            and ensure_utc(m.created_at) >= since
            for m in sender_history
        )
        if duplicate:
            return [AbuseSignal("duplicate_content", AbuseSeverity.LOW, "Similar message was sent recently")]
        return []
