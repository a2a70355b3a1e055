# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Consent and opt-out resolution for parent communication.

Resolution happens in two steps. ``build_guardian_preferences`` reduces
raw consent and opt-out records to one ``GuardianPreference`` per guardian,
applying student scope and expiry as of a given time. ``resolve_consent``
is then a pure function of (category, preferences, bypass flags):

1. Emergency (or mandatory category): always allowed.
2. Manual teacher message in a bypassable category: allowed.
3. Guardian-level global opt-out: guardian opted out.
4. Category opt-out: guardian opted out.
5. Consent status for the category decides opted in / out / no preference.
6. Several guardians are combined with the category's conflict strategy.

Example:
    >>> prefs = [GuardianPreference("g1", is_primary=True, global_opt_out=True)]
    >>> resolve_consent(MessageCategory.LEARNING_UPDATE, prefs).reason
    'global opt-out'
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from src.core.notifications.models import GuardianContact, MessageCategory
from src.utils.datetime import ensure_utc, is_expired

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class ConsentStatus(str, Enum):
    GRANTED = "granted"
    PENDING = "pending"
    WITHDRAWN = "withdrawn"
    NOT_REQUESTED = "not_requested"


class OptOutScope(str, Enum):
    ALL_AUTOMATED = "all_automated"
    CATEGORY = "category"
    STUDENT_SPECIFIC = "student_specific"
    TEMPORARY = "temporary"


class ConflictStrategy(str, Enum):
    ANY_GUARDIAN_ALLOWS = "any_guardian_allows"
    ALL_GUARDIANS_ALLOW = "all_guardians_allow"
    PRIMARY_GUARDIAN_DECIDES = "primary_guardian_decides"
    MOST_PERMISSIVE = "most_permissive"
    MOST_RESTRICTIVE = "most_restrictive"


class GuardianChoice(str, Enum):
    OPTED_IN = "opted_in"
    OPTED_OUT = "opted_out"
    NO_PREFERENCE = "no_preference"


class ConsentClarity(str, Enum):
    CLEAR = "clear"
    MISSING = "missing"
    UNCLEAR = "unclear"
    EXPIRED = "expired"
    CONFLICTING = "conflicting"


class FollowUpType(str, Enum):
    COLLECT_CONSENT = "collect_consent"
    VERIFY_CONSENT = "verify_consent"
    RESOLVE_CONFLICT = "resolve_conflict"


class ConsentReason(str, Enum):
    """Decision reasons; the value is the human-readable text."""

    EMERGENCY_MANDATORY = "emergency bypass"
    MANUAL_TEACHER_BYPASS = "manual teacher message bypass"
    OPTED_IN = "opted in"
    OPTED_OUT_GLOBAL = "global opt-out"
    OPTED_OUT_CATEGORY = "category opt-out"
    CONSENT_WITHDRAWN = "consent withdrawn"
    CONSENT_EXPIRED = "consent expired"
    CONSENT_NOT_GRANTED = "consent not granted"
    NO_GUARDIANS = "no linked guardians"
    CONFLICT_RESOLVED_ANY = "at least one guardian allows"
    CONFLICT_RESOLVED_ALL = "all guardians allow"
    CONFLICT_RESOLVED_PRIMARY = "primary guardian decision applied"
    CONFLICT_DENIED = "guardians do not agree"


@dataclass(frozen=True)
class CategoryConsentConfig:
    """Consent rules of one message category.

    Attributes:
        label: Display label.
        mandatory: Cannot be opted out of; always delivered.
        requires_explicit_consent: Consent must be granted explicitly.
        teacher_bypass: Manual teacher messages ignore opt-outs.
        conflict_strategy: How disagreeing guardians are combined.
        default_status: Status assumed when a guardian has no record.
        expiry_months: Granted consent lapses after this many months.
    """

    label: str
    mandatory: bool = False
    requires_explicit_consent: bool = True
    teacher_bypass: bool = True
    conflict_strategy: ConflictStrategy = ConflictStrategy.ANY_GUARDIAN_ALLOWS
    default_status: ConsentStatus | None = None
    expiry_months: int | None = None


CATEGORY_CONSENT_CONFIG: dict[MessageCategory, CategoryConsentConfig] = {
    MessageCategory.EMERGENCY: CategoryConsentConfig(
        label="Emergency Alerts",
        mandatory=True,
        requires_explicit_consent=False,
        default_status=ConsentStatus.GRANTED,
    ),
    MessageCategory.ATTENDANCE: CategoryConsentConfig(label="Attendance Updates"),
    MessageCategory.LEARNING_UPDATE: CategoryConsentConfig(label="Learning Updates"),
    MessageCategory.FEE_STATUS: CategoryConsentConfig(
        label="Fee Information",
        teacher_bypass=False,
        conflict_strategy=ConflictStrategy.PRIMARY_GUARDIAN_DECIDES,
        expiry_months=12,
    ),
    MessageCategory.ANNOUNCEMENT: CategoryConsentConfig(label="School Announcements"),
}


@dataclass
class ConsentRecord:
    """A guardian's consent for one category, optionally for one student."""

    guardian_id: str
    category: MessageCategory
    status: ConsentStatus
    student_id: str | None = None
    recorded_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass
class OptOutRecord:
    """A guardian's opt-out.

    ``category`` None means all automated messages within the record's
    student scope.
    """

    guardian_id: str
    scope: OptOutScope
    category: MessageCategory | None = None
    student_id: str | None = None
    reason: str = ""
    created_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True


@dataclass(frozen=True)
class GuardianPreference:
    """One guardian's effective preferences for one category and student."""

    guardian_id: str
    is_primary: bool = False
    global_opt_out: bool = False
    category_opt_out: bool = False
    consent_status: ConsentStatus | None = None
    consent_expired: bool = False


@dataclass(frozen=True)
class GuardianDecision:
    guardian_id: str
    is_primary: bool
    choice: GuardianChoice
    reason: ConsentReason
    clarity: ConsentClarity


@dataclass(frozen=True)
class ConsentDecision:
    """Aggregate consent decision.

    Attributes:
        allowed: Whether sending is permitted.
        reason_code: Machine-readable reason.
        recipients: Guardians who should receive the message.
        bypass_applied: Whether a bypass rule short-circuited evaluation.
        guardian_decisions: Per-guardian decisions, in input order.
        strategy: Conflict strategy applied for several guardians.
        clarity: How clear the underlying consent situation is.
        follow_up: Task type that would clarify consent, if any.
    """

    allowed: bool
    reason_code: ConsentReason
    recipients: tuple[str, ...] = ()
    bypass_applied: bool = False
    guardian_decisions: tuple[GuardianDecision, ...] = field(default_factory=tuple)
    strategy: ConflictStrategy | None = None
    clarity: ConsentClarity = ConsentClarity.CLEAR
    follow_up: FollowUpType | None = None

    @property
    def reason(self) -> str:
        return self.reason_code.value


def _opt_out_applies(record: OptOutRecord, student_id: str, as_of: datetime) -> bool:
    if not record.is_active or is_expired(record.expires_at, as_of):
        return False
    return record.student_id is None or record.student_id == student_id


def _consent_lapsed(record: ConsentRecord, config: CategoryConsentConfig, as_of: datetime) -> bool:
    if is_expired(record.expires_at, as_of):
        return True
    if config.expiry_months and record.recorded_at and record.status is ConsentStatus.GRANTED:
        lapses_at = ensure_utc(record.recorded_at) + timedelta(days=30 * config.expiry_months)
        return lapses_at < ensure_utc(as_of)
    return False


def build_guardian_preferences(
    category: MessageCategory,
    student_id: str,
    guardians: list[GuardianContact],
    consents: list[ConsentRecord],
    opt_outs: list[OptOutRecord],
    as_of: datetime,
) -> list[GuardianPreference]:
    """Reduce consent and opt-out records to per-guardian preferences.

    Expired or inactive opt-outs are ignored; guardian-wide and
    student-specific opt-outs merge. For consent, a student-specific record
    wins over a guardian-wide one, and the latest record wins among equals.

    Args:
        category: Message category being evaluated.
        student_id: Student the message is about.
        guardians: Guardians linked to the student, in directory order.
        consents: Consent records of those guardians.
        opt_outs: Opt-out records of those guardians.
        as_of: Reference time for expiry checks.

    Returns:
        One preference per guardian, in the order of ``guardians``.
    """
    config = CATEGORY_CONSENT_CONFIG[category]
    preferences: list[GuardianPreference] = []

    for guardian in guardians:
        global_opt_out = False
        category_opt_out = False
        for record in opt_outs:
            if record.guardian_id != guardian.guardian_id:
                continue
            if not _opt_out_applies(record, student_id, as_of):
                continue
            if record.scope is OptOutScope.ALL_AUTOMATED or record.category is None:
                global_opt_out = True
            elif record.category == category:
                category_opt_out = True

        candidates = [
            record
            for record in consents
            if record.guardian_id == guardian.guardian_id
            and record.category == category
            and record.student_id in (None, student_id)
        ]
        status: ConsentStatus | None = None
        expired = False
        if candidates:
            chosen = max(
                candidates,
                key=lambda r: (
                    r.student_id is not None,
                    ensure_utc(r.recorded_at) or _EPOCH,
                ),
            )
            status = chosen.status
            expired = _consent_lapsed(chosen, config, as_of)

        preferences.append(
            GuardianPreference(
                guardian_id=guardian.guardian_id,
                is_primary=guardian.is_primary,
                global_opt_out=global_opt_out,
                category_opt_out=category_opt_out,
                consent_status=status,
                consent_expired=expired,
            )
        )

    return preferences


def _decide_guardian(pref: GuardianPreference, config: CategoryConsentConfig) -> GuardianDecision:
    def decision(choice: GuardianChoice, reason: ConsentReason, clarity: ConsentClarity) -> GuardianDecision:
        return GuardianDecision(pref.guardian_id, pref.is_primary, choice, reason, clarity)

    if pref.global_opt_out:
        return decision(GuardianChoice.OPTED_OUT, ConsentReason.OPTED_OUT_GLOBAL, ConsentClarity.CLEAR)
    if pref.category_opt_out:
        return decision(GuardianChoice.OPTED_OUT, ConsentReason.OPTED_OUT_CATEGORY, ConsentClarity.CLEAR)

    status = pref.consent_status
    if status is None:
        if config.default_status is ConsentStatus.GRANTED or not config.requires_explicit_consent:
            return decision(GuardianChoice.OPTED_IN, ConsentReason.OPTED_IN, ConsentClarity.CLEAR)
        return decision(GuardianChoice.NO_PREFERENCE, ConsentReason.CONSENT_NOT_GRANTED, ConsentClarity.MISSING)
    if pref.consent_expired:
        return decision(GuardianChoice.OPTED_OUT, ConsentReason.CONSENT_EXPIRED, ConsentClarity.EXPIRED)
    if status is ConsentStatus.GRANTED:
        return decision(GuardianChoice.OPTED_IN, ConsentReason.OPTED_IN, ConsentClarity.CLEAR)
    if status is ConsentStatus.WITHDRAWN:
        return decision(GuardianChoice.OPTED_OUT, ConsentReason.CONSENT_WITHDRAWN, ConsentClarity.CLEAR)
    return decision(GuardianChoice.NO_PREFERENCE, ConsentReason.CONSENT_NOT_GRANTED, ConsentClarity.UNCLEAR)


_FOLLOW_UP: dict[ConsentClarity, FollowUpType] = {
    ConsentClarity.MISSING: FollowUpType.COLLECT_CONSENT,
    ConsentClarity.EXPIRED: FollowUpType.COLLECT_CONSENT,
    ConsentClarity.UNCLEAR: FollowUpType.VERIFY_CONSENT,
    ConsentClarity.CONFLICTING: FollowUpType.RESOLVE_CONFLICT,
}


def _denial_reason(decisions: list[GuardianDecision]) -> ConsentReason:
    reasons = {d.reason for d in decisions}
    if len(reasons) == 1:
        return reasons.pop()
    if all(d.choice is GuardianChoice.OPTED_OUT for d in decisions):
        if ConsentReason.OPTED_OUT_GLOBAL in reasons:
            return ConsentReason.OPTED_OUT_GLOBAL
        return ConsentReason.OPTED_OUT_CATEGORY
    return ConsentReason.CONSENT_NOT_GRANTED


def _denial_clarity(decisions: list[GuardianDecision]) -> ConsentClarity:
    choices = {d.choice for d in decisions}
    if GuardianChoice.OPTED_IN in choices and GuardianChoice.OPTED_OUT in choices:
        return ConsentClarity.CONFLICTING
    for clarity in (ConsentClarity.EXPIRED, ConsentClarity.MISSING, ConsentClarity.UNCLEAR):
        if any(d.clarity is clarity for d in decisions):
            return clarity
    return ConsentClarity.CLEAR


def resolve_consent(
    category: MessageCategory,
    preferences: list[GuardianPreference],
    is_emergency: bool = False,
    is_manual_teacher_message: bool = False,
    strategy: ConflictStrategy | None = None,
) -> ConsentDecision:
    """Decide whether a message may be sent and to which guardians.

    Pure: identical inputs always produce an identical decision.

    Args:
        category: Message category.
        preferences: Effective per-guardian preferences.
        is_emergency: Emergency broadcast flag.
        is_manual_teacher_message: Authored manually by a teacher.
        strategy: Overrides the category's conflict strategy.

    Returns:
        The aggregate decision with per-guardian detail.
    """
    config = CATEGORY_CONSENT_CONFIG[category]
    everyone = tuple(p.guardian_id for p in preferences)

    if is_emergency or config.mandatory:
        return ConsentDecision(
            allowed=True,
            reason_code=ConsentReason.EMERGENCY_MANDATORY,
            recipients=everyone,
            bypass_applied=True,
        )

    if is_manual_teacher_message and config.teacher_bypass:
        return ConsentDecision(
            allowed=True,
            reason_code=ConsentReason.MANUAL_TEACHER_BYPASS,
            recipients=everyone,
            bypass_applied=True,
        )

    if not preferences:
        return ConsentDecision(
            allowed=False,
            reason_code=ConsentReason.NO_GUARDIANS,
            clarity=ConsentClarity.MISSING,
        )

    decisions = [_decide_guardian(pref, config) for pref in preferences]
    opted_in = tuple(d.guardian_id for d in decisions if d.choice is GuardianChoice.OPTED_IN)
    opted_out = [d for d in decisions if d.choice is GuardianChoice.OPTED_OUT]

    applied: ConflictStrategy | None = None
    if len(decisions) == 1:
        allowed = bool(opted_in)
        reason = ConsentReason.OPTED_IN if allowed else decisions[0].reason
    else:
        applied = strategy or config.conflict_strategy
        primary = next((d for d in decisions if d.is_primary), None)
        if applied is ConflictStrategy.ALL_GUARDIANS_ALLOW:
            allowed = len(opted_in) == len(decisions)
            reason = ConsentReason.CONFLICT_RESOLVED_ALL
        elif applied is ConflictStrategy.MOST_RESTRICTIVE:
            allowed = not opted_out and bool(opted_in)
            reason = ConsentReason.CONFLICT_RESOLVED_ALL
        elif applied is ConflictStrategy.PRIMARY_GUARDIAN_DECIDES and primary is not None:
            allowed = primary.choice is GuardianChoice.OPTED_IN
            reason = ConsentReason.CONFLICT_RESOLVED_PRIMARY
        else:
            allowed = bool(opted_in)
            reason = ConsentReason.CONFLICT_RESOLVED_ANY
        if not allowed:
            reason = _denial_reason(decisions)
            if opted_in:
                reason = ConsentReason.CONFLICT_DENIED

    if allowed:
        return ConsentDecision(
            allowed=True,
            reason_code=reason,
            recipients=opted_in,
            guardian_decisions=tuple(decisions),
            strategy=applied,
            clarity=ConsentClarity.CONFLICTING if opted_out else ConsentClarity.CLEAR,
        )

    clarity = _denial_clarity(decisions)
    return ConsentDecision(
        allowed=False,
        reason_code=reason,
        guardian_decisions=tuple(decisions),
        strategy=applied,
        clarity=clarity,
        follow_up=_FOLLOW_UP.get(clarity),
    )
