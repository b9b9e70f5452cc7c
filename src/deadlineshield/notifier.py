from __future__ import annotations

import html
import logging
import os
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from .config import AlertsConfig, AppConfig
from .models import ChangeEvent, Source
from .utils import log_event, to_iso


class Notifier(Protocol):
    def notify(self, recipient: str, subject: str, text: str, html_body: str) -> bool: ...


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    text: str
    html: str


class SmtpNotifier:
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.logger = logger or logging.getLogger("deadlineshield.notifier")

    def notify(self, recipient: str, subject: str, text: str, html_body: str) -> bool:
        message = MIMEMultipart("alternative")
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.attach(MIMEText(text, "plain"))
        message.attach(MIMEText(html_body, "html"))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.username and self.password:
                    server.starttls()
                    server.login(self.username, self.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            log_event(
                self.logger,
                logging.WARNING,
                "notify_failed",
                recipient=recipient,
                error=str(exc),
            )
            return False
        log_event(self.logger, logging.INFO, "notify_sent", recipient=recipient)
        return True


class LoggingNotifier:
    """Records alerts in the log instead of sending them."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("deadlineshield.notifier")

    def notify(self, recipient: str, subject: str, text: str, html_body: str) -> bool:
        log_event(self.logger, logging.INFO, "notify_logged", recipient=recipient, subject=subject)
        return True


def build_notifier(alerts: AlertsConfig, logger: logging.Logger | None = None) -> Notifier:
    host = os.environ.get("DS_SMTP_HOST", "").strip()
    if not host or not alerts.email_enabled:
        return LoggingNotifier(logger)
    return SmtpNotifier(
        host=host,
        port=int(os.environ.get("DS_SMTP_PORT", "587")),
        sender=alerts.from_address,
        username=os.environ.get("DS_SMTP_USER") or None,
        password=os.environ.get("DS_SMTP_PASSWORD") or None,
        logger=logger,
    )


def compose_alert(
    source: Source,
    event: ChangeEvent,
    app: AppConfig,
    alerts: AlertsConfig,
) -> AlertMessage:
    level = event.severity.level.value
    subject = f"[{level}] Change Detected: {source.name}"
    detected = to_iso(event.detected_at)

    lines = [
        f"A change was detected for {source.name}.",
        "",
        f"URL: {source.url}",
        f"Detected At: {detected}",
        f"Severity: {level} ({event.severity.score}/100)",
    ]
    if event.explanation_bullets:
        lines.append("")
        lines.append("Why this matters:")
        lines.extend(f"- {bullet}" for bullet in event.explanation_bullets)
    if event.extracted_deadlines:
        lines.append("")
        lines.append("Dates found:")
        for deadline in event.extracted_deadlines:
            label = f"{deadline.label}: " if deadline.label else ""
            lines.append(f"- {label}{deadline.date.date().isoformat()}")
    if event.action_guidance:
        lines.append("")
        lines.append(f"Suggested action: {event.action_guidance}")
    lines.extend(
        [
            "",
            f"View details: {app.dashboard_url}",
            "",
            "--",
            f"Disclaimer: {alerts.disclaimer}",
        ]
    )

    parts = [
        f"<h3>Change Detected: {html.escape(source.name)}</h3>",
        "<p>We detected a change at the monitored source.</p>",
        f'<p><strong>URL:</strong> <a href="{html.escape(source.url)}">{html.escape(source.url)}</a></p>',
        f"<p><strong>Detected At:</strong> {detected}</p>",
        f"<p><strong>Severity:</strong> {level} ({event.severity.score}/100)</p>",
    ]
    if event.explanation_bullets:
        items = "".join(f"<li>{html.escape(bullet)}</li>" for bullet in event.explanation_bullets)
        parts.append(f"<ul>{items}</ul>")
    if event.action_guidance:
        parts.append(f"<p><strong>Suggested action:</strong> {html.escape(event.action_guidance)}</p>")
    parts.extend(
        [
            f'<p><a href="{html.escape(app.dashboard_url)}">View Dashboard</a></p>',
            "<hr/>",
            f'<p style="font-size:0.8em; color:#666;">DISCLAIMER: {html.escape(alerts.disclaimer)}</p>',
        ]
    )
    return AlertMessage(subject=subject, text="\n".join(lines), html="\n".join(parts))
