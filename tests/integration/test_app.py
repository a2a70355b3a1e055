# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration test of the composed service on a temporary SQLite database."""

from pathlib import Path

import pytest

from src.app import NotificationApp
from src.core.notifications.models import DeliveryState
from src.infrastructure.database import SqlAlchemyNotificationStore

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_send_through_composed_app(
    tmp_path: Path, settings, directory, channels, clock, make_request
) -> None:
    settings.database.url = f"sqlite+aiosqlite:///{tmp_path / 'app.db'}"
    settings.delivery.max_concurrent_sends = 1
    app = NotificationApp.build(settings, directory, channels=channels, clock=clock)
    audit_events: list[str] = []

    async def on_audit(event) -> None:
        audit_events.append(event.event_type)

    app.event_bus.subscribe("audit.*", on_audit)
    await app.start(run_scheduler=False)
    try:
        result = await app.service.request_send(make_request())
        processed = await app.delivery.process_queue()
        health = await app.health()
        message = await app.store.get_message(result.message_ids[0])
    finally:
        await app.stop()

    assert isinstance(app.store, SqlAlchemyNotificationStore)
    assert processed["sent"] == 2
    assert message.state is DeliveryState.SENT
    assert health["database"] is True
    assert health["queue"]["by_state"]["sent"] == 2
    assert "audit.message.send_succeeded" in audit_events
    assert [t.name for t in app.scheduler.list_tasks()] == [
        "Process Delivery Queue",
        "Check Emergency Escalations",
        "Sync Offline Queue",
        "Recover Stale Sends",
    ]
    assert all(channel.closed for channel in channels.values())
