# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background job infrastructure for the notification service.

Provides the periodic jobs that keep delivery moving without a request:
- Queue processor: claims ready messages and attempts delivery
- Escalation checker: escalates emergencies with outstanding recipients
- Offline sync: probes connectivity and replays buffered sends

Scheduler:
    from src.infrastructure.background import (
        NotificationScheduler,
        register_notification_jobs,
    )

    scheduler = NotificationScheduler()
    register_notification_jobs(
        scheduler,
        process_queue=delivery.process_queue,
        check_escalations=emergency.check_escalations,
        sync_offline=connectivity.sync,
        recover_stale_sends=delivery.recover_stale_sends,
    )
    await scheduler.start()
"""

from src.infrastructure.background.connectivity import ConnectivityMonitor
from src.infrastructure.background.scheduler import (
    NotificationScheduler,
    ScheduledTask,
    register_notification_jobs,
)

__all__ = [
    # Connectivity
    "ConnectivityMonitor",
    # Scheduler
    "NotificationScheduler",
    "ScheduledTask",
    "register_notification_jobs",
]
