# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Shared send flow for HTTP provider channels.

SMS and rich messaging providers are plain JSON-over-HTTP APIs. Both
post one request per message and translate the response status into a
ChannelResult. Wire formats stay provider-neutral.
"""

from abc import abstractmethod
from typing import Any

import httpx

from src.core.notifications.models import FailureCode
from src.infrastructure.notifications.channels.base import (
    BaseChannel,
    ChannelResult,
    NotificationPayload,
    failure_code_for_status,
)


class HttpProviderChannel(BaseChannel):
    """Channel that delivers through a JSON HTTP provider API.

    An ``httpx.AsyncClient`` may be injected; otherwise one is created
    lazily and closed by ``close()``.
    """

    def __init__(
        self,
        api_url: str,
        timeout: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self._api_url = api_url
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def _headers(self) -> dict[str, str]:
        """Authentication headers for the provider."""
        ...

    @abstractmethod
    def _build_body(self, payload: NotificationPayload) -> dict[str, Any]:
        """Provider request body for one message."""
        ...

    def _validate_address(self, address: str) -> str | None:
        """Return an error message if the address is unusable."""
        return None if address else "No address for channel"

    async def send(self, payload: NotificationPayload) -> ChannelResult:
        error = self._validate_address(payload.address)
        if error:
            return self.create_failure_result(FailureCode.INVALID_ADDRESS, error)

        try:
            response = await self._get_client().post(
                self._api_url,
                headers=self._headers(),
                json=self._build_body(payload),
            )
        except httpx.TimeoutException as e:
            self.logger.warning(
                "%s provider timed out for message %s: %s",
                self.channel_type.value,
                payload.message_id,
                str(e),
            )
            return self.create_failure_result(FailureCode.TIMEOUT, "Provider request timed out")
        except httpx.RequestError as e:
            self.logger.warning(
                "%s provider unreachable for message %s: %s",
                self.channel_type.value,
                payload.message_id,
                str(e),
            )
            return self.create_failure_result(FailureCode.NETWORK_ERROR, f"Network error: {e}")

        if response.status_code in (200, 201, 202):
            data = _json_or_empty(response)
            provider_id = data.get("id") or data.get("message_id")
            delivered = data.get("status") == "delivered"
            self.logger.debug(
                "%s accepted message %s (provider id %s)",
                self.channel_type.value,
                payload.message_id,
                provider_id,
            )
            return self.create_success_result(
                provider_message_id=str(provider_id) if provider_id else None,
                delivered=delivered,
                metadata={"status_code": response.status_code},
            )

        code = failure_code_for_status(response.status_code)
        self.logger.warning(
            "%s provider rejected message %s (%d): %s",
            self.channel_type.value,
            payload.message_id,
            response.status_code,
            response.text,
        )
        return self.create_failure_result(
            code,
            f"Provider returned {response.status_code}",
            metadata={"status_code": response.status_code},
        )


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
