# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SMS channel backed by an HTTP SMS gateway.

Configuration (via environment variables):
- SMS_API_URL: Gateway send endpoint
- SMS_API_KEY: Gateway API key
- SMS_SENDER_ID: Sender name shown to recipients
"""

import re
from typing import Any

import httpx

from src.core.config.settings import SMSSettings
from src.core.notifications.models import Channel
from src.infrastructure.notifications.channels.base import NotificationPayload
from src.infrastructure.notifications.channels.http import HttpProviderChannel

_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()-]{7,20}$")

# Single-segment SMS length; longer bodies are split by the gateway.
SMS_SEGMENT_LENGTH = 160


class SmsChannel(HttpProviderChannel):
    """Sends plain-text SMS through the configured gateway."""

    def __init__(self, settings: SMSSettings, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings.api_url, settings.timeout, client)
        self._settings = settings

    @property
    def channel_type(self) -> Channel:
        return Channel.SMS

    def _headers(self) -> dict[str, str]:
        return {"X-API-Key": self._settings.api_key.get_secret_value()}

    def _validate_address(self, address: str) -> str | None:
        if not address:
            return "No phone number"
        if not _PHONE_PATTERN.match(address):
            return f"Invalid phone number: {address}"
        return None

    def _build_body(self, payload: NotificationPayload) -> dict[str, Any]:
        text = f"{payload.subject}\n{payload.body}" if payload.subject else payload.body
        return {
            "to": payload.address,
            "from": self._settings.sender_id,
            "text": text,
            "reference": payload.message_id,
            "segments": max(1, -(-len(text) // SMS_SEGMENT_LENGTH)),
        }
