# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Scheduler for periodic notification jobs.

Uses APScheduler's asyncio scheduler to drive the queue processor, the
escalation checker, the offline sync trigger and the recovery of sends
whose worker never reported back. Jobs are coroutine functions; a job
never overlaps with itself and missed runs coalesce.

Example:
    from src.infrastructure.background.scheduler import NotificationScheduler

    scheduler = NotificationScheduler()
    scheduler.add_interval_task(
        name="Process Delivery Queue",
        func=delivery.process_queue,
        seconds=20,
    )
    await scheduler.start()
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.utils.datetime import Clock, utc_now

logger = logging.getLogger(__name__)

JobFunction = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledTask:
    """A periodic job and its run statistics.

    Attributes:
        name: Task name.
        func: Coroutine function run on each tick.
        interval_seconds: Seconds between runs.
        id: Unique task ID.
        enabled: Whether task is enabled.
        last_run: Last execution time.
        run_count: Number of completed runs.
        error_count: Number of failed runs.
        last_result: Return value of the last successful run.
    """

    name: str
    func: JobFunction
    interval_seconds: float
    id: str = field(default_factory=lambda: str(uuid4()))
    enabled: bool = True
    start_immediately: bool = False
    last_run: datetime | None = None
    run_count: int = 0
    error_count: int = 0
    last_result: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "enabled": self.enabled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
        }


class NotificationScheduler:
    """Interval scheduler for the notification background jobs.

    Tasks may be added before or after start; tasks added before start
    are registered with APScheduler when it starts.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._scheduler: AsyncIOScheduler | None = None
        self._tasks: dict[str, ScheduledTask] = {}
        self._running = False
        self._clock = clock

    @property
    def is_running(self) -> bool:
        return self._running

    def add_interval_task(
        self,
        name: str,
        func: JobFunction,
        seconds: float = 0,
        minutes: int = 0,
        enabled: bool = True,
        start_immediately: bool = False,
    ) -> ScheduledTask:
        """Add an interval-scheduled task.

        Args:
            name: Task name.
            func: Coroutine function to run.
            seconds: Interval seconds.
            minutes: Interval minutes.
            enabled: Whether task is enabled.
            start_immediately: Run immediately on start.

        Returns:
            Created ScheduledTask.

        Raises:
            ValueError: If the interval is not positive.
        """
        interval = seconds + minutes * 60
        if interval <= 0:
            raise ValueError(f"Interval of task {name!r} must be positive")

        task = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval,
            enabled=enabled,
            start_immediately=start_immediately,
        )
        self._tasks[task.id] = task

        if self._scheduler is not None:
            self._schedule(task)

        logger.info("Added interval task: %s (every %ss)", name, interval)
        return task

    def _schedule(self, task: ScheduledTask) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self._execute_task,
            trigger=IntervalTrigger(seconds=task.interval_seconds),
            args=[task.id],
            id=task.id,
            name=task.name,
            next_run_time=self._clock() if task.start_immediately else None,
            max_instances=1,
            coalesce=True,
        )
        if not task.enabled:
            self._scheduler.pause_job(task.id)

    async def _execute_task(self, task_id: str) -> None:
        """Run one task; failures are counted and logged, never raised."""
        task = self._tasks.get(task_id)
        if not task or not task.enabled:
            return

        logger.debug("Executing scheduled task: %s", task.name)

        try:
            task.last_result = await task.func()
            task.run_count += 1
        except Exception as e:
            task.error_count += 1
            logger.error("Scheduled task %s failed: %s", task.name, str(e), exc_info=True)
        finally:
            task.last_run = self._clock()

    async def run_now(self, task_id: str) -> Any:
        """Run a task immediately, outside its schedule."""
        task = self._tasks.get(task_id)
        if task is None:
            return None
        await self._execute_task(task_id)
        return task.last_result

    def enable_task(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if not task:
            return False

        task.enabled = True
        if self._scheduler is not None and self._scheduler.get_job(task_id) is not None:
            self._scheduler.resume_job(task_id)
        return True

    def disable_task(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if not task:
            return False

        task.enabled = False
        if self._scheduler is not None and self._scheduler.get_job(task_id) is not None:
            self._scheduler.pause_job(task_id)
        return True

    def list_tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    async def start(self) -> None:
        """Start the scheduler and register every known task."""
        if self._running:
            return

        self._scheduler = AsyncIOScheduler()
        for task in self._tasks.values():
            self._schedule(task)
        self._scheduler.start()
        self._running = True

        logger.info("Notification scheduler started with %d tasks", len(self._tasks))

    async def stop(self) -> None:
        if not self._running:
            return

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        self._running = False
        logger.info("Notification scheduler stopped")

    def get_stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "is_running": self._running,
            "task_count": len(self._tasks),
            "enabled_count": sum(1 for t in self._tasks.values() if t.enabled),
            "total_runs": sum(t.run_count for t in self._tasks.values()),
            "total_errors": sum(t.error_count for t in self._tasks.values()),
            "tasks": [t.to_dict() for t in self._tasks.values()],
        }


def register_notification_jobs(
    scheduler: NotificationScheduler,
    *,
    process_queue: JobFunction,
    check_escalations: JobFunction,
    sync_offline: JobFunction,
    recover_stale_sends: JobFunction,
    queue_poll_seconds: float = 20,
    escalation_check_seconds: float = 30,
    offline_sync_seconds: float = 60,
    stale_send_sweep_seconds: float = 60,
) -> list[ScheduledTask]:
    """Register the periodic notification jobs.

    Returns:
        The created tasks: queue processor, escalation checker, offline
        sync and stale send recovery.
    """
    tasks = [
        scheduler.add_interval_task(
            name="Process Delivery Queue",
            func=process_queue,
            seconds=queue_poll_seconds,
            start_immediately=True,
        ),
        scheduler.add_interval_task(
            name="Check Emergency Escalations",
            func=check_escalations,
            seconds=escalation_check_seconds,
        ),
        scheduler.add_interval_task(
            name="Sync Offline Queue",
            func=sync_offline,
            seconds=offline_sync_seconds,
        ),
        scheduler.add_interval_task(
            name="Recover Stale Sends",
            func=recover_stale_sends,
            seconds=stale_send_sweep_seconds,
        ),
    ]
    logger.info("Registered %d notification jobs", len(tasks))
    return tasks
