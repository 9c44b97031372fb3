"""Outbound mail transports."""

from __future__ import annotations

import logging
import smtplib
import ssl
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid, parseaddr

from .config import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class MailMessage:
    to: str
    subject: str
    text: str
    html: str | None = None
    to_name: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class LogTransport:
    """Development transport: logs the message and reports success."""

    def __init__(self, sender: str) -> None:
        self.sender = sender

    def send(self, message: MailMessage) -> SendResult:
        message_id = f"<{uuid.uuid4()}@eventgate.local>"
        logger.info(
            "Mail (log transport) to %s: %s [%s]",
            message.to,
            message.subject,
            message_id,
        )
        return SendResult(success=True, message_id=message_id)


class SmtpTransport:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _build(self, message: MailMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self.sender
        mime["To"] = (
            f"{message.to_name} <{message.to}>" if message.to_name else message.to
        )
        mime["Message-ID"] = make_msgid(domain=parseaddr(self.sender)[1].split("@")[-1])
        mime.attach(MIMEText(message.text, "plain"))
        if message.html:
            mime.attach(MIMEText(message.html, "html"))
        return mime

    def send(self, message: MailMessage) -> SendResult:
        mime = self._build(message)
        from_address = parseaddr(self.sender)[1] or self.sender
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.username:
                    server.login(self.username, self.password or "")
                server.sendmail(from_address, [message.to], mime.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP send to %s failed: %s", message.to, exc)
            return SendResult(success=False, error=str(exc) or type(exc).__name__)
        return SendResult(success=True, message_id=mime["Message-ID"])


def build_transport(settings: Settings):
    """Return the transport named by ``mail_transport``."""
    name = (settings.mail_transport or "log").strip().lower()
    if name == "log":
        return LogTransport(settings.mail_from)
    if name == "smtp":
        return SmtpTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.mail_from,
            username=settings.smtp_username or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
            timeout=settings.mail_timeout_seconds,
        )
    raise ValueError(f"Unknown mail transport {settings.mail_transport!r}")
