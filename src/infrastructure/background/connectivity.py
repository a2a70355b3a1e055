# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Network availability probe driving the offline queue.

The monitor issues a lightweight GET to a known URL. Any response below
500 counts as online; transport errors and timeouts count as offline.
Each change of state is published on the event bus, and the transition
back online triggers the reconnect callback, which replays the offline
queue. Between reconnects the queue is not replayed again.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx

from src.core.config.settings import WorkerSettings
from src.infrastructure.events import EventBus, EventTypes
from src.utils.datetime import Clock, utc_now

logger = logging.getLogger(__name__)

ReconnectCallback = Callable[[], Awaitable[Any]]


class ConnectivityMonitor:
    """Tracks whether the delivery providers are reachable.

    Attributes:
        settings: Probe URL and timeout.
    """

    def __init__(
        self,
        settings: WorkerSettings,
        event_bus: EventBus | None = None,
        on_reconnect: ReconnectCallback | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self._event_bus = event_bus
        self._on_reconnect = on_reconnect
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._online = True
        self._last_checked: datetime | None = None
        self._replay_due = True
        self._last_replay: Any = None

    def set_reconnect_callback(self, callback: ReconnectCallback) -> None:
        self._on_reconnect = callback

    def is_online(self) -> bool:
        """Last observed state. Starts optimistic until the first probe."""
        return self._online

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.connectivity_timeout_seconds)
        return self._client

    async def probe(self) -> bool:
        """Probe the network once without changing state."""
        try:
            response = await self._get_client().get(self.settings.connectivity_probe_url)
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe failed: %s", str(e))
            return False
        return response.status_code < 500

    async def check(self) -> bool:
        """Probe, record the state, and react to a change.

        Returns:
            Whether the network is reachable.
        """
        online = await self.probe()
        self._last_checked = self._clock()
        if online == self._online:
            return online

        self._online = online
        if online:
            logger.info("Connectivity restored")
            await self._publish(EventTypes.Connectivity.ONLINE)
            await self._replay()
        else:
            logger.warning("Connectivity lost; sends will be buffered offline")
            await self._publish(EventTypes.Connectivity.OFFLINE)
        return online

    async def sync(self) -> dict[str, Any]:
        """Periodic job: probe, and replay buffered sends once per reconnect.

        Items left by an earlier run are replayed on the first sync after
        start. Items that still fail wait for the next reconnect.
        """
        self._last_replay = None
        online = await self.check()
        if online and self._replay_due:
            await self._replay()
        return {"online": online, "replay": self._last_replay}

    async def _replay(self) -> None:
        self._replay_due = False
        if self._on_reconnect is not None:
            self._last_replay = await self._on_reconnect()

    async def _publish(self, event_type: str) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(
                event_type,
                {"checked_at": self._last_checked.isoformat() if self._last_checked else None},
            )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
