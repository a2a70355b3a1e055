# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- A controllable clock
- In-memory store, guardian directory and scripted channels
- Fully wired delivery, emergency, offline queue and service components
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from pydantic import SecretStr

from src.core.config.settings import Settings
from src.core.notifications.consent import ConsentRecord, ConsentStatus
from src.core.notifications.delivery import DeliveryEngine
from src.core.notifications.directory import InMemoryGuardianDirectory
from src.core.notifications.emergency import EmergencyEngine
from src.core.notifications.models import (
    Channel,
    FailureCode,
    GuardianContact,
    MessageCategory,
    SendRequest,
)
from src.core.notifications.offline_queue import OfflineQueue
from src.core.notifications.rate_limit import RateLimitGuard
from src.core.notifications.service import NotificationService
from src.infrastructure.audit import AuditEntry, AuditLogger
from src.infrastructure.events import EventBus, EventData
from src.infrastructure.notifications.channels.base import (
    BaseChannel,
    ChannelResult,
    ChannelStatus,
    NotificationPayload,
)
from src.infrastructure.storage import InMemoryNotificationStore

# Monday, so day and ISO week windows start on the same date.
START_TIME = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Test Doubles
# =============================================================================


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedChannel(BaseChannel):
    """Channel returning scripted outcomes, then ``default`` once the script runs out.

    Script entries are ChannelStatus values, FailureCode values (a failure
    with that code) or exceptions to raise.
    """

    def __init__(
        self,
        channel: Channel,
        script: list[Any] | None = None,
        default: ChannelStatus = ChannelStatus.SENT,
    ) -> None:
        super().__init__()
        self._channel = channel
        self.script = list(script or [])
        self.default = default
        self.sent: list[NotificationPayload] = []
        self.closed = False

    @property
    def channel_type(self) -> Channel:
        return self._channel

    async def send(self, payload: NotificationPayload) -> ChannelResult:
        self.sent.append(payload)
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FailureCode):
            return self.create_failure_result(outcome, f"scripted {outcome.value}")
        if outcome is ChannelStatus.FAILED:
            return self.create_failure_result(FailureCode.PROVIDER_ERROR, "scripted failure")
        if outcome is ChannelStatus.SKIPPED:
            return self.create_skipped_result("scripted skip")
        return self.create_success_result(
            provider_message_id=f"{self._channel.value}-{len(self.sent)}",
            delivered=outcome is ChannelStatus.DELIVERED,
        )

    async def close(self) -> None:
        self.closed = True


class MemoryAuditSink:
    """Collects audit entries in a list."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def write(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]


class EventRecorder:
    """Subscribes to every event on a bus and keeps them."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[EventData] = []
        bus.subscribe("*", self._record)

    async def _record(self, event: EventData) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type for event in self.events]


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (uses a temporary SQLite database)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    """Provide a clock frozen at a Monday morning."""
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    """Provide default settings with SMTP configured for the email channel."""
    settings = Settings(environment="development")
    settings.smtp.username = "mailer"
    settings.smtp.password = SecretStr("secret")
    return settings


@pytest.fixture
def store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    return EventRecorder(event_bus)


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def audit(audit_sink: MemoryAuditSink, clock: FrozenClock) -> AuditLogger:
    return AuditLogger([audit_sink], clock=clock)


@pytest.fixture
def channels() -> dict[Channel, ScriptedChannel]:
    """Provide one scripted sender per channel, all succeeding by default."""
    return {channel: ScriptedChannel(channel) for channel in Channel}


@pytest.fixture
def directory() -> InMemoryGuardianDirectory:
    """Provide a directory with two students.

    stu-1 has a primary guardian reachable on every channel and a second
    guardian with SMS and email only. stu-2 has one guardian with email
    only. Every guardian consented to attendance, learning and
    announcement messages.
    """
    directory = InMemoryGuardianDirectory()
    directory.add_guardian(
        GuardianContact(
            guardian_id="g-1",
            student_id="stu-1",
            name="Alex Morgan",
            rich_messaging_handle="@alex",
            phone="+15550001001",
            email="alex@example.com",
            is_primary=True,
        )
    )
    directory.add_guardian(
        GuardianContact(
            guardian_id="g-2",
            student_id="stu-1",
            name="Sam Morgan",
            phone="+15550001002",
            email="sam@example.com",
        )
    )
    directory.add_guardian(
        GuardianContact(
            guardian_id="g-3",
            student_id="stu-2",
            name="Jordan Lee",
            email="jordan@example.com",
            is_primary=True,
        )
    )
    for guardian_id in ("g-1", "g-2", "g-3"):
        for category in (
            MessageCategory.ATTENDANCE,
            MessageCategory.LEARNING_UPDATE,
            MessageCategory.ANNOUNCEMENT,
        ):
            directory.add_consent(ConsentRecord(guardian_id, category, ConsentStatus.GRANTED))
    return directory


@pytest.fixture
def delivery(
    store: InMemoryNotificationStore,
    channels: dict[Channel, ScriptedChannel],
    settings: Settings,
    event_bus: EventBus,
    audit: AuditLogger,
    clock: FrozenClock,
) -> DeliveryEngine:
    return DeliveryEngine(store, channels, settings.delivery, event_bus, audit, clock)


@pytest.fixture
def emergency_engine(
    store: InMemoryNotificationStore,
    directory: InMemoryGuardianDirectory,
    delivery: DeliveryEngine,
    settings: Settings,
    event_bus: EventBus,
    audit: AuditLogger,
    clock: FrozenClock,
) -> EmergencyEngine:
    return EmergencyEngine(store, directory, delivery, settings.emergency, event_bus, audit, clock)


@pytest.fixture
def offline_queue(
    store: InMemoryNotificationStore,
    settings: Settings,
    event_bus: EventBus,
    audit: AuditLogger,
    clock: FrozenClock,
) -> OfflineQueue:
    return OfflineQueue(store, settings.offline_queue, event_bus, audit, clock)


@pytest.fixture
def online() -> dict[str, bool]:
    """Mutable connectivity flag read by the service fixture."""
    return {"value": True}


@pytest.fixture
def service(
    store: InMemoryNotificationStore,
    directory: InMemoryGuardianDirectory,
    delivery: DeliveryEngine,
    settings: Settings,
    offline_queue: OfflineQueue,
    audit: AuditLogger,
    clock: FrozenClock,
    online: dict[str, bool],
) -> NotificationService:
    return NotificationService(
        store,
        directory,
        delivery,
        RateLimitGuard(settings.rate_limit, settings.abuse),
        offline_queue=offline_queue,
        audit=audit,
        clock=clock,
        is_online=lambda: online["value"],
    )


@pytest.fixture
def make_request() -> Callable[..., SendRequest]:
    """Provide a factory for attendance send requests with overridable fields."""

    def factory(**overrides: Any) -> SendRequest:
        values: dict[str, Any] = {
            "category": MessageCategory.ATTENDANCE,
            "student_id": "stu-1",
            "sender_id": "teacher-1",
            "subject": "Attendance Update",
            "body": (
                "Dear Parent/Guardian,\n\n"
                "Riley was not recorded as present in class today.\n\n"
                "Thank you."
            ),
        }
        values.update(overrides)
        return SendRequest(**values)

    return factory
