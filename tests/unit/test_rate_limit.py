# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for rate limiting and abuse detection."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.core.config.settings import AbuseSettings, RateLimitSettings
from src.core.notifications.errors import AbuseBlocked, RateLimitDenied
from src.core.notifications.models import (
    DeliveryState,
    Message,
    MessageCategory,
    SendRequest,
    new_id,
)
from src.core.notifications.rate_limit import (
    AbuseSeverity,
    RateLimitGuard,
    RateLimitOverride,
)

NOW = datetime(2025, 3, 12, 12, 0, tzinfo=timezone.utc)  # Wednesday

BODY = "Dear Parent/Guardian,\n\nRiley was not recorded as present in class today.\n\nThank you."


def _message(minutes_ago: float = 120, **overrides: Any) -> Message:
    created = NOW - timedelta(minutes=minutes_ago)
    values: dict[str, Any] = {
        "id": new_id("msg"),
        "category": MessageCategory.ATTENDANCE,
        "student_id": "stu-9",
        "guardian_id": "g-9",
        "sender_id": "teacher-1",
        "subject": "Earlier update",
        "body": f"Earlier message {new_id('body')}",
        "created_at": created,
        "updated_at": created,
        "state": DeliveryState.DELIVERED,
    }
    values.update(overrides)
    return Message(**values)


def _request(**overrides: Any) -> SendRequest:
    values: dict[str, Any] = {
        "category": MessageCategory.ATTENDANCE,
        "student_id": "stu-1",
        "sender_id": "teacher-1",
        "subject": "Attendance Update",
        "body": BODY,
    }
    values.update(overrides)
    return SendRequest(**values)


@pytest.fixture
def guard() -> RateLimitGuard:
    return RateLimitGuard(RateLimitSettings(), AbuseSettings())


class TestSenderCaps:
    """Tests for per-sender daily and weekly caps."""

    def test_allows_under_daily_limit(self, guard: RateLimitGuard) -> None:
        history = [_message() for _ in range(19)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.allowed

    def test_denies_at_daily_limit(self, guard: RateLimitGuard) -> None:
        history = [_message() for _ in range(20)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert not decision.allowed
        assert decision.denial is not None
        assert decision.denial.check == "sender_daily_limit"
        assert decision.denial.reason == "Daily message limit reached (20 messages)"
        assert decision.denial.requires_admin_override
        assert decision.denial.reset_at == datetime(2025, 3, 12, 23, 59, 59, 999999, tzinfo=timezone.utc)

    def test_cancelled_and_idle_messages_do_not_count(self, guard: RateLimitGuard) -> None:
        history = [_message(state=DeliveryState.CANCELLED) for _ in range(15)]
        history += [_message(state=DeliveryState.IDLE) for _ in range(15)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.allowed

    def test_yesterday_counts_toward_week_not_day(self, guard: RateLimitGuard) -> None:
        history = [_message(minutes_ago=24 * 60) for _ in range(20)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.allowed
        weekly = next(r for r in decision.rate_limits if r.check == "sender_weekly_limit")
        assert weekly.current_usage == 20

    def test_denies_at_weekly_limit(self, guard: RateLimitGuard) -> None:
        history = [_message(minutes_ago=24 * 60) for _ in range(50)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.denial is not None
        assert decision.denial.check == "sender_weekly_limit"

    def test_other_senders_do_not_count(self, guard: RateLimitGuard) -> None:
        history = [_message(sender_id="teacher-2") for _ in range(25)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.allowed

    def test_active_override_raises_cap(self, guard: RateLimitGuard) -> None:
        history = [_message() for _ in range(20)]
        override = RateLimitOverride(
            sender_id="teacher-1",
            multiplier=3.0,
            reason="Report day",
            granted_by="admin-1",
            granted_at=NOW - timedelta(hours=1),
            expires_at=NOW + timedelta(hours=1),
        )

        decision = guard.evaluate(_request(), ["g-1"], history, NOW, override)

        assert decision.allowed
        daily = next(r for r in decision.rate_limits if r.check == "sender_daily_limit")
        assert daily.limit == 60

    def test_expired_override_is_ignored(self, guard: RateLimitGuard) -> None:
        history = [_message() for _ in range(20)]
        override = RateLimitOverride(
            sender_id="teacher-1",
            multiplier=3.0,
            reason="Report day",
            granted_by="admin-1",
            granted_at=NOW - timedelta(days=2),
            expires_at=NOW - timedelta(days=1),
        )

        decision = guard.evaluate(_request(), ["g-1"], history, NOW, override)

        assert not decision.allowed


class TestRecipientChecks:
    """Tests for send interval, student cap and parent cooldown."""

    def test_min_send_interval(self, guard: RateLimitGuard) -> None:
        history = [_message(minutes_ago=0.25)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.denial is not None
        assert decision.denial.check == "min_send_interval"

    def test_student_daily_limit(self, guard: RateLimitGuard) -> None:
        history = [
            _message(student_id="stu-1", sender_id=f"teacher-{i + 2}", guardian_id="g-5")
            for i in range(3)
        ]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.denial is not None
        assert decision.denial.check == "student_daily_limit"

    def test_parent_cooldown(self, guard: RateLimitGuard) -> None:
        history = [_message(minutes_ago=30, guardian_id="g-1")]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.denial is not None
        assert decision.denial.check == "parent_cooldown"
        assert decision.denial.reset_at == NOW + timedelta(minutes=30)

    def test_to_exception_carries_check_name(self, guard: RateLimitGuard) -> None:
        history = [_message() for _ in range(20)]

        error = guard.evaluate(_request(), ["g-1"], history, NOW).to_exception()

        assert isinstance(error, RateLimitDenied)
        assert error.code == "sender_daily_limit"
        assert error.details["limit"] == 20


class TestAbuseSignals:
    """Tests for abuse detection."""

    def test_rapid_fire_requires_review(self, guard: RateLimitGuard) -> None:
        history = [_message(minutes_ago=2 + i, guardian_id=f"g-{i + 10}") for i in range(5)]

        decision = guard.evaluate(_request(), ["g-1"], history, NOW)

        assert decision.allowed
        assert decision.requires_review
        assert "rapid_fire" in decision.flags
        assert decision.severity is AbuseSeverity.MEDIUM

    def test_rejection_history_flags_then_blocks(self, guard: RateLimitGuard) -> None:
        def rejected() -> Message:
            return _message(
                minutes_ago=3 * 24 * 60,
                state=DeliveryState.CANCELLED,
                rejected_at=NOW - timedelta(days=3),
            )

        flagged = guard.evaluate(_request(), ["g-1"], [rejected() for _ in range(3)], NOW)
        blocked = guard.evaluate(_request(), ["g-1"], [rejected() for _ in range(6)], NOW)

        assert flagged.allowed
        assert flagged.requires_review
        assert not blocked.allowed
        assert blocked.auto_blocked
        assert isinstance(blocked.to_exception(), AbuseBlocked)
        assert blocked.to_exception().code == "rejection_history"

    def test_forbidden_phrase_requires_review(self, guard: RateLimitGuard) -> None:
        request = _request(body="Dear Parent/Guardian,\n\nRiley is struggling with reading.\n\nThank you.")

        decision = guard.evaluate(request, ["g-1"], [], NOW)

        assert decision.requires_review
        assert "forbidden_phrase" in decision.flags

    def test_empty_subject_requires_review(self, guard: RateLimitGuard) -> None:
        decision = guard.evaluate(_request(subject="  "), ["g-1"], [], NOW)

        assert "empty_content" in decision.flags
        assert decision.requires_review

    def test_all_caps_and_repetition(self, guard: RateLimitGuard) -> None:
        request = _request(body="PLEASE READ THIS NOTE TODAY!!!!!!!!!!!!")

        decision = guard.evaluate(request, ["g-1"], [], NOW)

        assert {"all_caps", "repetitive_characters"} <= set(decision.flags)

    def test_long_content_is_low_severity(self, guard: RateLimitGuard) -> None:
        request = _request(subject="Subject line " * 10, body="Plain words. " * 200)

        decision = guard.evaluate(request, ["g-1"], [], NOW)

        assert {"body_too_long", "subject_too_long"} <= set(decision.flags)
        assert decision.allowed

    def test_duplicate_content_for_same_student(self, guard: RateLimitGuard) -> None:
        earlier = _message(
            student_id="stu-1",
            guardian_id="g-7",
            subject="attendance   update",
            body=BODY.upper(),
        )

        decision = guard.evaluate(_request(), ["g-1"], [earlier], NOW)

        assert decision.flags == ["duplicate_content"]
        assert decision.severity is AbuseSeverity.LOW
        assert not decision.requires_review

    def test_clean_request_has_no_signals(self, guard: RateLimitGuard) -> None:
        decision = guard.evaluate(_request(), ["g-1"], [], NOW)

        assert decision.allowed
        assert decision.abuse_signals == []
        assert decision.severity is AbuseSeverity.NONE
