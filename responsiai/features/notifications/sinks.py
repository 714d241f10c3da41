"""
Notification sinks.

The sink is picked once at startup by build_sink(): SmtpSink when SMTP is
configured, LogSink otherwise. Senders never check configuration again.
"""
from __future__ import annotations

import logging
import smtplib
from collections import deque
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Deque, Optional, Protocol

from responsiai.core.config import CoreConfig

logger = logging.getLogger("responsiai.notifications")


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    body: str


class Sink(Protocol):
    name: str

    def send(self, message: Message) -> None:
        """Deliver one message; raise on failure."""
        ...


class SmtpSink:
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: bool = False,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_ssl = use_ssl or port == 465
        self.timeout = timeout

    def _build(self, message: Message) -> EmailMessage:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = message.to
        email["Subject"] = message.subject
        email.set_content(message.body)
        return email

    def send(self, message: Message) -> None:
        email = self._build(message)
        if self.use_ssl:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as server:
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(email)
            return
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(email)


class LogSink:
    """Logs messages instead of sending them. Keeps the most recent ones for inspection."""

    name = "log"

    def __init__(self) -> None:
        self.sent: Deque[Message] = deque(maxlen=100)

    def send(self, message: Message) -> None:
        self.sent.append(message)
        logger.info(f"[email] to={message.to} subject={message.subject!r}")


def build_sink(config: CoreConfig) -> Sink:
    if config.email_enabled:
        logger.info("[notifications] SMTP sink configured")
        return SmtpSink(
            host=config.smtp_host,
            port=config.smtp_port,
            sender=config.email_from,
            username=config.smtp_user,
            password=config.smtp_password,
            use_ssl=config.smtp_use_ssl,
        )
    logger.info("[notifications] SMTP not configured, notifications will be logged only")
    return LogSink()
