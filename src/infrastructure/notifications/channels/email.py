# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Email channel using async SMTP.

This channel sends guardian messages using aiosmtplib for
async SMTP communication. It sends both plain text and
HTML versions of each message.

Configuration (via environment variables):
- SMTP_HOST: SMTP server hostname
- SMTP_PORT: SMTP server port (default: 587)
- SMTP_USERNAME: SMTP authentication username
- SMTP_PASSWORD: SMTP authentication password
- SMTP_USE_TLS: Use STARTTLS (default: true)
- SMTP_FROM_EMAIL: Sender email address
- SMTP_FROM_NAME: Sender display name
"""

import html
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Awaitable, Callable

import aiosmtplib

from src.core.config.settings import SMTPSettings
from src.core.notifications.models import Channel, FailureCode
from src.infrastructure.notifications.channels.base import (
    BaseChannel,
    ChannelResult,
    NotificationPayload,
)

SmtpSend = Callable[..., Awaitable[Any]]


class EmailChannel(BaseChannel):
    """Email channel using async SMTP.

    Last-resort channel in the default rank order. The SMTP send
    function is injectable so tests can run without a server.
    """

    def __init__(self, settings: SMTPSettings, smtp_send: SmtpSend = aiosmtplib.send) -> None:
        super().__init__()
        self._settings = settings
        self._smtp_send = smtp_send

    @property
    def channel_type(self) -> Channel:
        return Channel.EMAIL

    async def send(self, payload: NotificationPayload) -> ChannelResult:
        """Send one message via SMTP.

        Args:
            payload: The notification payload.

        Returns:
            ChannelResult with the send outcome.
        """
        if not self._settings.is_configured:
            return self.create_skipped_result("SMTP configuration incomplete")

        if not payload.address or "@" not in payload.address:
            return self.create_failure_result(
                FailureCode.INVALID_ADDRESS,
                f"Invalid email address: {payload.address!r}",
            )

        message = self._build_email_message(payload)

        try:
            await self._smtp_send(
                message,
                hostname=self._settings.host,
                port=self._settings.port,
                username=self._settings.username,
                password=self._settings.password.get_secret_value(),
                start_tls=self._settings.use_tls,
                timeout=self._settings.timeout,
            )
        except aiosmtplib.SMTPTimeoutError as e:
            return self._failure(payload, FailureCode.TIMEOUT, e)
        except aiosmtplib.SMTPRecipientsRefused as e:
            return self._failure(payload, FailureCode.INVALID_ADDRESS, e)
        except aiosmtplib.SMTPAuthenticationError as e:
            return self._failure(payload, FailureCode.BLOCKED, e)
        except (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected) as e:
            return self._failure(payload, FailureCode.NETWORK_ERROR, e)
        except aiosmtplib.SMTPResponseException as e:
            code = FailureCode.RATE_LIMITED if e.code == 421 else FailureCode.PROVIDER_ERROR
            return self._failure(payload, code, e)
        except aiosmtplib.SMTPException as e:
            return self._failure(payload, FailureCode.PROVIDER_ERROR, e)

        self.logger.info("Email sent for message %s", payload.message_id)
        return self.create_success_result(
            provider_message_id=message["Message-ID"],
            metadata={"recipient": payload.address},
        )

    def _failure(
        self,
        payload: NotificationPayload,
        code: FailureCode,
        error: Exception,
    ) -> ChannelResult:
        self.logger.warning(
            "Failed to send email for message %s (%s): %s",
            payload.message_id,
            code.value,
            str(error),
        )
        return self.create_failure_result(
            code,
            f"SMTP error: {error}",
            metadata={"recipient": payload.address},
        )

    def _build_email_message(self, payload: NotificationPayload) -> MIMEMultipart:
        message = MIMEMultipart("alternative")

        message["From"] = f"{self._settings.from_name} <{self._settings.from_email}>"
        message["To"] = payload.address
        message["Subject"] = payload.subject
        message["Message-ID"] = make_msgid(domain=self._settings.from_email.split("@")[-1])
        message["X-Notification-Reference"] = payload.message_id

        message.attach(MIMEText(self._build_plain_text(payload), "plain", "utf-8"))
        message.attach(MIMEText(self._build_html(payload), "html", "utf-8"))

        return message

    def _build_plain_text(self, payload: NotificationPayload) -> str:
        lines = [
            payload.subject,
            "=" * len(payload.subject),
            "",
            payload.body,
            "",
            "---",
            f"This message was sent by {self._settings.from_name}.",
        ]
        return "\n".join(lines)

    def _build_html(self, payload: NotificationPayload) -> str:
        subject = html.escape(payload.subject)
        body = html.escape(payload.body).replace("\n", "<br>")
        sender = html.escape(self._settings.from_name)

        return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #1F2937;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <h1 style="font-size: 20px; margin: 0 0 16px 0;">{subject}</h1>
        <p style="margin: 0 0 16px 0;">{body}</p>
        <p style="font-size: 12px; color: #9CA3AF;">This message was sent by {sender}.</p>
    </div>
</body>
</html>
        """.strip()
