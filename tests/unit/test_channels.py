# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the channel senders."""

import json
from unittest.mock import AsyncMock

import aiosmtplib
import httpx
import pytest
from pydantic import SecretStr

from src.core.config.settings import RichMessagingSettings, SMSSettings, SMTPSettings
from src.core.notifications.models import Channel, FailureCode
from src.infrastructure.notifications.channels import (
    ChannelStatus,
    EmailChannel,
    NotificationPayload,
    RichMessagingChannel,
    SmsChannel,
    failure_code_for_status,
)


def _payload(channel: Channel, address: str, **overrides) -> NotificationPayload:
    values = {
        "message_id": "msg_1",
        "channel": channel,
        "address": address,
        "subject": "Attendance today",
        "body": "Riley was not recorded as present in class today.",
        "category": "attendance",
        "guardian_id": "g-1",
        "student_id": "stu-1",
    }
    values.update(overrides)
    return NotificationPayload(**values)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFailureCodeForStatus:
    """Tests for HTTP status mapping."""

    @pytest.mark.parametrize(
        ("status_code", "expected"),
        [
            (429, FailureCode.RATE_LIMITED),
            (400, FailureCode.INVALID_ADDRESS),
            (404, FailureCode.INVALID_ADDRESS),
            (403, FailureCode.BLOCKED),
            (409, FailureCode.REJECTED),
            (503, FailureCode.CHANNEL_UNAVAILABLE),
            (504, FailureCode.TIMEOUT),
            (500, FailureCode.PROVIDER_ERROR),
            (302, FailureCode.UNKNOWN),
        ],
    )
    def test_mapping(self, status_code: int, expected: FailureCode) -> None:
        assert failure_code_for_status(status_code) is expected


class TestSmsChannel:
    """Tests for SmsChannel."""

    @pytest.mark.asyncio
    async def test_posts_message_to_gateway(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"id": "sms-42"})

        settings = SMSSettings(api_url="https://sms.test/send", api_key=SecretStr("k-1"), sender_id="HILLSIDE")
        channel = SmsChannel(settings, client=_client(handler))

        result = await channel.send(_payload(Channel.SMS, "+15550001001"))

        body = json.loads(seen[0].content)
        assert result.status is ChannelStatus.SENT
        assert result.provider_message_id == "sms-42"
        assert seen[0].headers["X-API-Key"] == "k-1"
        assert body["to"] == "+15550001001"
        assert body["from"] == "HILLSIDE"
        assert body["text"].startswith("Attendance today\n")
        assert body["segments"] == 1

    @pytest.mark.asyncio
    async def test_invalid_number_is_not_sent(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("gateway must not be called")

        channel = SmsChannel(SMSSettings(), client=_client(handler))

        result = await channel.send(_payload(Channel.SMS, "call me"))

        assert result.status is ChannelStatus.FAILED
        assert result.error_code is FailureCode.INVALID_ADDRESS

    @pytest.mark.asyncio
    async def test_gateway_rate_limit(self) -> None:
        channel = SmsChannel(SMSSettings(), client=_client(lambda request: httpx.Response(429, text="slow down")))

        result = await channel.send(_payload(Channel.SMS, "+15550001001"))

        assert result.error_code is FailureCode.RATE_LIMITED
        assert result.metadata["status_code"] == 429

    @pytest.mark.asyncio
    async def test_timeout_and_network_errors(self) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        timed_out = await SmsChannel(SMSSettings(), client=_client(timeout)).send(
            _payload(Channel.SMS, "+15550001001")
        )
        offline = await SmsChannel(SMSSettings(), client=_client(unreachable)).send(
            _payload(Channel.SMS, "+15550001001")
        )

        assert timed_out.error_code is FailureCode.TIMEOUT
        assert offline.error_code is FailureCode.NETWORK_ERROR


class TestRichMessagingChannel:
    """Tests for RichMessagingChannel."""

    @pytest.mark.asyncio
    async def test_emergency_requests_read_receipt(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"message_id": "rm-7", "status": "delivered"})

        settings = RichMessagingSettings(api_token=SecretStr("t-1"))
        channel = RichMessagingChannel(settings, client=_client(handler))

        result = await channel.send(
            _payload(Channel.RICH_MESSAGING, "@alex", emergency_id="emg_1", priority="emergency")
        )

        assert result.status is ChannelStatus.DELIVERED
        assert result.provider_message_id == "rm-7"
        assert seen[0]["read_receipt"] is True
        assert seen[0]["metadata"] == {"emergency_id": "emg_1"}

    @pytest.mark.asyncio
    async def test_missing_handle(self) -> None:
        channel = RichMessagingChannel(RichMessagingSettings(), client=_client(lambda r: httpx.Response(200)))

        result = await channel.send(_payload(Channel.RICH_MESSAGING, ""))

        assert result.error_code is FailureCode.INVALID_ADDRESS

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        channel = RichMessagingChannel(RichMessagingSettings(), client=client)

        await channel.close()

        assert not client.is_closed
        await client.aclose()


class TestEmailChannel:
    """Tests for EmailChannel."""

    @pytest.fixture
    def smtp(self) -> SMTPSettings:
        return SMTPSettings(
            host="smtp.test",
            username="mailer",
            password=SecretStr("secret"),
            from_email="office@hillside.example",
            from_name="Hillside Primary",
        )

    @pytest.mark.asyncio
    async def test_sends_multipart_message(self, smtp: SMTPSettings) -> None:
        smtp_send = AsyncMock()
        channel = EmailChannel(smtp, smtp_send=smtp_send)

        result = await channel.send(_payload(Channel.EMAIL, "alex@example.com", body="Line one\n<b>two</b>"))

        message = smtp_send.await_args.args[0]
        kwargs = smtp_send.await_args.kwargs
        assert result.status is ChannelStatus.SENT
        assert result.provider_message_id == message["Message-ID"]
        assert message["To"] == "alex@example.com"
        assert message["From"] == "Hillside Primary <office@hillside.example>"
        assert kwargs["hostname"] == "smtp.test"
        assert kwargs["password"] == "secret"
        html_part = message.get_payload()[1].get_payload(decode=True).decode()
        assert "&lt;b&gt;two&lt;/b&gt;" in html_part

    @pytest.mark.asyncio
    async def test_unconfigured_smtp_is_skipped(self) -> None:
        smtp_send = AsyncMock()
        channel = EmailChannel(SMTPSettings(username=""), smtp_send=smtp_send)

        result = await channel.send(_payload(Channel.EMAIL, "alex@example.com"))

        assert result.status is ChannelStatus.SKIPPED
        assert result.error_code is FailureCode.CHANNEL_UNAVAILABLE
        smtp_send.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (aiosmtplib.SMTPTimeoutError("timed out"), FailureCode.TIMEOUT),
            (aiosmtplib.SMTPResponseException(421, "try later"), FailureCode.RATE_LIMITED),
            (aiosmtplib.SMTPResponseException(554, "rejected"), FailureCode.PROVIDER_ERROR),
            (aiosmtplib.SMTPServerDisconnected("gone"), FailureCode.NETWORK_ERROR),
        ],
    )
    async def test_smtp_errors_map_to_failure_codes(
        self, smtp: SMTPSettings, error: Exception, expected: FailureCode
    ) -> None:
        channel = EmailChannel(smtp, smtp_send=AsyncMock(side_effect=error))

        result = await channel.send(_payload(Channel.EMAIL, "alex@example.com"))

        assert result.status is ChannelStatus.FAILED
        assert result.error_code is expected

    @pytest.mark.asyncio
    async def test_invalid_address(self, smtp: SMTPSettings) -> None:
        channel = EmailChannel(smtp, smtp_send=AsyncMock())

        result = await channel.send(_payload(Channel.EMAIL, "not-an-address"))

        assert result.error_code is FailureCode.INVALID_ADDRESS
