# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Composition root of the parent notification service.

Builds every component from settings and an injected guardian directory,
and owns the startup and shutdown sequence: logging, database, scheduler
jobs, connectivity monitoring and channel clients.

Example:
    from src.app import NotificationApp

    app = NotificationApp.build(get_settings(), directory)
    await app.start()
    result = await app.service.request_send(request)
    await app.stop()
"""

import logging
from dataclasses import dataclass
from typing import Any

from src.core.config.settings import Settings
from src.core.notifications.delivery import DeliveryEngine
from src.core.notifications.directory import GuardianDirectory
from src.core.notifications.emergency import EmergencyEngine
from src.core.notifications.models import Channel
from src.core.notifications.offline_queue import OfflineQueue
from src.core.notifications.rate_limit import RateLimitGuard
from src.core.notifications.service import NotificationService
from src.infrastructure.audit import AuditLogger, EventBusAuditSink, StructlogAuditSink
from src.infrastructure.background import (
    ConnectivityMonitor,
    NotificationScheduler,
    register_notification_jobs,
)
from src.infrastructure.database import DatabaseManager, SqlAlchemyNotificationStore
from src.infrastructure.events import EventBus
from src.infrastructure.notifications.channels import BaseChannel, build_channels
from src.infrastructure.storage import InMemoryNotificationStore, NotificationStore
from src.utils.datetime import Clock, utc_now
from src.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class NotificationApp:
    """All wired components of one running service instance."""

    settings: Settings
    store: NotificationStore
    event_bus: EventBus
    audit: AuditLogger
    channels: dict[Channel, BaseChannel]
    delivery: DeliveryEngine
    emergency: EmergencyEngine
    offline_queue: OfflineQueue
    service: NotificationService
    connectivity: ConnectivityMonitor
    scheduler: NotificationScheduler
    database: DatabaseManager | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        directory: GuardianDirectory,
        *,
        store: NotificationStore | None = None,
        channels: dict[Channel, BaseChannel] | None = None,
        durable: bool = True,
        clock: Clock = utc_now,
    ) -> "NotificationApp":
        """Wire the service.

        Args:
            settings: Application settings.
            directory: Source of guardian links, contacts and consent.
            store: Store to use; defaults to the SQL store when ``durable``
                is set, otherwise the in-memory store.
            channels: Channel senders; defaults to the configured providers.
            durable: Use the SQL store when no store is given.
            clock: Time source shared by every component.
        """
        database = None
        if store is None:
            if durable:
                database = DatabaseManager(settings.database)
                store = SqlAlchemyNotificationStore(database)
            else:
                store = InMemoryNotificationStore()

        event_bus = EventBus()
        audit = AuditLogger([StructlogAuditSink(), EventBusAuditSink(event_bus)], clock=clock)
        channels = channels if channels is not None else build_channels(settings)

        delivery = DeliveryEngine(store, channels, settings.delivery, event_bus, audit, clock)
        emergency = EmergencyEngine(
            store, directory, delivery, settings.emergency, event_bus, audit, clock
        )
        offline_queue = OfflineQueue(store, settings.offline_queue, event_bus, audit, clock)

        connectivity = ConnectivityMonitor(settings.worker, event_bus, clock=clock)
        service = NotificationService(
            store,
            directory,
            delivery,
            RateLimitGuard(settings.rate_limit, settings.abuse),
            offline_queue=offline_queue,
            audit=audit,
            clock=clock,
            is_online=connectivity.is_online,
        )
        connectivity.set_reconnect_callback(service.replay_offline)

        scheduler = NotificationScheduler(clock=clock)
        register_notification_jobs(
            scheduler,
            process_queue=delivery.process_queue,
            check_escalations=emergency.check_escalations,
            sync_offline=connectivity.sync,
            recover_stale_sends=delivery.recover_stale_sends,
            queue_poll_seconds=settings.worker.queue_poll_seconds,
            escalation_check_seconds=settings.emergency.escalation_check_interval_seconds,
            offline_sync_seconds=settings.worker.offline_sync_seconds,
            stale_send_sweep_seconds=settings.worker.stale_send_sweep_seconds,
        )

        return cls(
            settings=settings,
            store=store,
            event_bus=event_bus,
            audit=audit,
            channels=channels,
            delivery=delivery,
            emergency=emergency,
            offline_queue=offline_queue,
            service=service,
            connectivity=connectivity,
            scheduler=scheduler,
            database=database,
        )

    async def start(self, run_scheduler: bool = True) -> None:
        """Configure logging, prepare storage and start the periodic jobs."""
        setup_logging(self.settings)
        logger.info(
            "Starting notification service (environment=%s)",
            self.settings.environment,
        )

        if self.database is not None:
            await self.database.init()
            await self.database.create_tables()
            logger.info("Database initialized")

        if run_scheduler:
            await self.scheduler.start()

    async def stop(self) -> None:
        """Stop jobs and release every client and connection."""
        await self.scheduler.stop()
        await self.connectivity.close()

        for channel, sender in self.channels.items():
            try:
                await sender.close()
            except Exception as e:
                logger.warning("Failed to close %s channel: %s", channel.value, str(e))

        if self.database is not None:
            await self.database.close()

        self.event_bus.clear()
        logger.info("Notification service stopped")

    async def health(self) -> dict[str, Any]:
        """Component status for operators."""
        return {
            "database": await self.database.check_connection() if self.database else True,
            "online": self.connectivity.is_online(),
            "scheduler": self.scheduler.get_stats(),
            "queue": await self.delivery.queue_stats(),
            "offline_queue": await self.offline_queue.get_stats(),
            "audit_failures": self.audit.failure_count,
        }
