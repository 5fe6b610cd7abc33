"""Email transports used by the gift notifier."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from giftsync_api.core.settings import Settings


class EmailBackend(Protocol):
    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        ...


def compose_message(
    recipient: str,
    subject: str,
    body_text: str,
    *,
    sender: str | None = None,
    body_html: str | None = None,
    reply_to: str | None = None,
) -> EmailMessage:
    """Plain-text message with an optional HTML alternative part."""

    message = EmailMessage()
    headers = {"From": sender, "To": recipient, "Subject": subject, "Reply-To": reply_to}
    for name, value in headers.items():
        if value:
            message[name] = value
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")
    return message


@dataclass(frozen=True, slots=True)
class SMTPConfig:
    host: str
    sender_email: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SMTPConfig | None":
        if not settings.smtp_host or not settings.smtp_sender_email:
            return None
        return cls(
            host=settings.smtp_host,
            sender_email=settings.smtp_sender_email,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class SMTPEmailBackend:
    """Delivers over SMTP on a worker thread so the event loop never blocks."""

    def __init__(self, config: SMTPConfig) -> None:
        self._config = config

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        message = compose_message(
            recipient,
            subject,
            body_text,
            sender=self._config.sender_email,
            body_html=body_html,
            reply_to=reply_to,
        )
        await asyncio.to_thread(self._transmit, message)

    def _transmit(self, message: EmailMessage) -> None:
        config = self._config
        with smtplib.SMTP(config.host, config.port, timeout=config.timeout_seconds) as smtp:
            if config.use_tls:
                smtp.starttls()
            if config.has_credentials:
                smtp.login(config.username, config.password)
            smtp.send_message(message)


class InMemoryEmailBackend:
    """Keeps outbound messages in ``sent_messages``; used for dry runs and tests."""

    def __init__(self) -> None:
        self.sent_messages: list[EmailMessage] = []

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        self.sent_messages.append(
            compose_message(recipient, subject, body_text, body_html=body_html, reply_to=reply_to)
        )
