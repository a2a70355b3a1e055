# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Best-effort audit trail for notification actions.

Audit entries describe state transitions, policy decisions, overrides and
emergency actions. Recording is best-effort: a sink failure is logged
locally and never propagates into the operation being audited.

Example:
    audit = AuditLogger([StructlogAuditSink(), EventBusAuditSink(bus)])
    await audit.record(
        "message.transition",
        actor_id="teacher-1",
        entity_type="message",
        entity_id=message.id,
        data={"from": "queued", "to": "sending"},
    )
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from src.core.notifications.errors import AuditFailure
from src.infrastructure.events import EventBus
from src.utils.datetime import Clock, utc_now
from src.utils.logging import get_audit_logger

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One append-only audit record."""

    action: str
    entity_type: str
    entity_id: str
    occurred_at: datetime
    actor_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "occurred_at": self.occurred_at.isoformat(),
            "actor_id": self.actor_id,
            "data": self.data,
        }


class AuditSink(Protocol):
    """Destination for audit entries."""

    async def write(self, entry: AuditEntry) -> None: ...


class StructlogAuditSink:
    """Writes audit entries as structured log lines on the ``audit`` logger."""

    def __init__(self, log: Any = None) -> None:
        self._log = log or get_audit_logger()

    async def write(self, entry: AuditEntry) -> None:
        try:
            self._log.info(entry.action, **{k: v for k, v in entry.to_dict().items() if k != "action"})
        except Exception as e:
            raise AuditFailure(f"Failed to write audit log line: {e}") from e


class EventBusAuditSink:
    """Mirrors audit entries onto the event bus as ``audit.<action>``."""

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    async def write(self, entry: AuditEntry) -> None:
        await self._event_bus.publish(f"audit.{entry.action}", entry.to_dict())


class AuditLogger:
    """Fans audit entries out to every configured sink."""

    def __init__(self, sinks: list[AuditSink] | None = None, clock: Clock = utc_now) -> None:
        self._sinks: list[AuditSink] = list(sinks or [])
        self._clock = clock
        self._failures = 0

    @property
    def failure_count(self) -> int:
        return self._failures

    async def record(
        self,
        action: str,
        *,
        entity_type: str,
        entity_id: str,
        actor_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Record an audit entry on all sinks.

        Never raises: sink failures are counted and logged.

        Returns:
            The entry that was recorded.
        """
        entry = AuditEntry(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            occurred_at=self._clock(),
            actor_id=actor_id,
            data=data or {},
        )

        for sink in self._sinks:
            try:
                await sink.write(entry)
            except Exception as e:
                self._failures += 1
                logger.warning(
                    "Audit sink %s failed for %s on %s %s: %s",
                    type(sink).__name__,
                    action,
                    entity_type,
                    entity_id,
                    str(e),
                )

        return entry
