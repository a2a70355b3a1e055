# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Rich messaging channel (chat-app style messages with a title and body).

Emergency messages request a read receipt so providers that support it
report delivery synchronously.
"""

from typing import Any

import httpx

from src.core.config.settings import RichMessagingSettings
from src.core.notifications.models import Channel
from src.infrastructure.notifications.channels.base import NotificationPayload
from src.infrastructure.notifications.channels.http import HttpProviderChannel


class RichMessagingChannel(HttpProviderChannel):
    """Primary channel: sends to the guardian's rich messaging handle."""

    def __init__(
        self,
        settings: RichMessagingSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(settings.api_url, settings.timeout, client)
        self._settings = settings

    @property
    def channel_type(self) -> Channel:
        return Channel.RICH_MESSAGING

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._settings.api_token.get_secret_value()}"}

    def _build_body(self, payload: NotificationPayload) -> dict[str, Any]:
        body: dict[str, Any] = {
            "recipient": payload.address,
            "title": payload.subject,
            "text": payload.body,
            "client_reference": payload.message_id,
            "priority": payload.priority,
        }
        if payload.emergency_id:
            body["read_receipt"] = True
            body["metadata"] = {"emergency_id": payload.emergency_id}
        return body
