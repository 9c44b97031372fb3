from __future__ import annotations

import smtplib
import types

import pytest

from eventgate import mail
from eventgate.mail import LogTransport, MailMessage, SmtpTransport, build_transport


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(("login", username, password))

    def sendmail(self, sender, recipients, body):
        if recipients == ["bounce@example.com"]:
            raise smtplib.SMTPRecipientsRefused({"bounce@example.com": (550, b"no")})
        self.calls.append(("sendmail", sender, recipients, body))


MESSAGE = MailMessage(
    to="jane@example.com",
    to_name="Jane",
    subject="Hello",
    text="Plain body",
    html="<p>HTML body</p>",
)


def _smtp_settings(**overrides):
    values = {
        "mail_transport": "smtp",
        "smtp_host": "mail.example.com",
        "smtp_port": 2525,
        "smtp_username": "mailer",
        "smtp_password": "secret",
        "smtp_use_tls": True,
        "mail_from": "EventGate <events@example.com>",
        "mail_timeout_seconds": 3.0,
    }
    values.update(overrides)
    return types.SimpleNamespace(**values)


def test_build_transport_selects_by_name():
    assert isinstance(build_transport(_smtp_settings(mail_transport="log")), LogTransport)
    smtp = build_transport(_smtp_settings(smtp_username=""))
    assert isinstance(smtp, SmtpTransport)
    assert smtp.username is None
    with pytest.raises(ValueError):
        build_transport(_smtp_settings(mail_transport="pigeon"))


def test_log_transport_always_succeeds():
    result = LogTransport("events@example.com").send(MESSAGE)
    assert result.success
    assert result.message_id.endswith("@eventgate.local>")


def test_smtp_transport_sends_multipart(monkeypatch):
    FakeSMTP.instances.clear()
    monkeypatch.setattr(mail.smtplib, "SMTP", FakeSMTP)

    result = build_transport(_smtp_settings()).send(MESSAGE)

    assert result.success
    assert result.message_id.endswith("@example.com>")
    server = FakeSMTP.instances[0]
    assert (server.host, server.port, server.timeout) == ("mail.example.com", 2525, 3.0)
    assert server.calls[0] == "starttls"
    assert server.calls[1] == ("login", "mailer", "secret")
    _, sender, recipients, body = server.calls[2]
    assert sender == "events@example.com"
    assert recipients == ["jane@example.com"]
    assert "Plain body" in body
    assert "<p>HTML body</p>" in body
    assert "To: Jane <jane@example.com>" in body


def test_smtp_failures_become_results(monkeypatch):
    monkeypatch.setattr(mail.smtplib, "SMTP", FakeSMTP)
    transport = build_transport(_smtp_settings(smtp_use_tls=False))

    bounced = MailMessage(to="bounce@example.com", subject="s", text="t")
    result = transport.send(bounced)

    assert not result.success
    assert result.error
