from __future__ import annotations

import smtplib
from datetime import datetime, timezone

from deadlineshield.config import default_config
from deadlineshield.models import (
    ActionCategory,
    ActionConfidence,
    ChangeEvent,
    DeadlineImpact,
    ExtractedDeadline,
    SeverityLevel,
    SeverityResult,
)
from deadlineshield.notifier import LoggingNotifier, SmtpNotifier, build_notifier, compose_alert

from conftest import T0


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    fail = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(("login", username, password))

    def send_message(self, message):
        if FakeSMTP.fail:
            raise smtplib.SMTPException("relay refused")
        self.messages.append(message)


def _event():
    return ChangeEvent(
        id="chg-1",
        source_id="src-1",
        tenant_id="acme",
        source_url="https://agency.example.gov/filing-rules",
        detected_at=T0,
        diff_summary="Content changed. 2 passage(s) added, 0 passage(s) removed.",
        severity=SeverityResult(score=60, level=SeverityLevel.HIGH, reasons=[]),
        explanation_bullets=["A new deadline was published. Earliest open deadline: 2025-03-03."],
        extracted_deadlines=[
            ExtractedDeadline(
                date=datetime(2025, 3, 3, tzinfo=timezone.utc),
                label="Deadline",
                source_text="Deadline: March 3, 2025",
            )
        ],
        deadline_impact=DeadlineImpact.NEW_DEADLINE,
        action_category=ActionCategory.UPDATE,
        action_guidance="Update your calendars.",
        action_confidence=ActionConfidence.MEDIUM,
    )


def test_compose_alert(source_record):
    config = default_config()
    source = source_record(name="Rules <Draft>")

    message = compose_alert(source, _event(), config.app, config.alerts)

    assert message.subject == "[HIGH] Change Detected: Rules <Draft>"
    assert "URL: https://agency.example.gov/filing-rules" in message.text
    assert "Detected At: 2025-01-15T09:00:00.000+00:00" in message.text
    assert "Why this matters:" in message.text
    assert "- Deadline: 2025-03-03" in message.text
    assert "Suggested action: Update your calendars." in message.text
    assert f"Disclaimer: {config.alerts.disclaimer}" in message.text
    assert "Rules &lt;Draft&gt;" in message.html
    assert "<Draft>" not in message.html


def test_build_notifier_without_host_logs(monkeypatch):
    config = default_config()

    assert isinstance(build_notifier(config.alerts), LoggingNotifier)


def test_build_notifier_with_host(monkeypatch):
    monkeypatch.setenv("DS_SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("DS_SMTP_PORT", "2525")

    notifier = build_notifier(default_config().alerts)

    assert isinstance(notifier, SmtpNotifier)
    assert notifier.port == 2525
    assert notifier.sender == "alerts@deadline-shield.app"


def test_smtp_notifier_sends(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail = False
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    notifier = SmtpNotifier("smtp.example.com", 587, "alerts@example.com", username="u", password="p")

    assert notifier.notify("ops@acme.example", "Subject", "text", "<p>html</p>") is True

    server = FakeSMTP.instances[0]
    assert server.calls == ["starttls", ("login", "u", "p")]
    message = server.messages[0]
    assert message["To"] == "ops@acme.example"
    assert message["Subject"] == "Subject"


def test_smtp_notifier_reports_failure(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail = True
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    notifier = SmtpNotifier("smtp.example.com", 25, "alerts@example.com")

    assert notifier.notify("ops@acme.example", "Subject", "text", "<p>html</p>") is False
    assert FakeSMTP.instances[0].calls == []
