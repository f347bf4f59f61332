"""Incident notification fan-out.

Notification is best-effort: a failed send is logged and never affects the
incident state that triggered it.
"""

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from upwatch.server.core.config import Settings
from upwatch.server.core.types import (
    AlertRecipientRecord,
    IncidentRecord,
    MonitorSnapshot,
    NotificationEvent,
)

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivery channel for a single message (email, SMS gateway, ...)."""

    async def send(self, recipient_email: str, subject: str, body: str) -> bool:
        """Deliver one message. Returns True on success."""
        ...


class SmtpNotifier:
    """Sends plain-text email over SMTP.

    smtplib is blocking, so each send runs in a worker thread.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        *,
        sender_email: str,
        sender_name: str = "Upwatch",
        use_tls: bool = True,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.use_tls = use_tls
        self.timeout = timeout

    async def send(self, recipient_email: str, subject: str, body: str) -> bool:
        return await asyncio.to_thread(self._send_sync, recipient_email, subject, body)

    def _send_sync(self, recipient_email: str, subject: str, body: str) -> bool:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.sender_name} <{self.sender_email}>"
        message["To"] = recipient_email
        message.attach(MIMEText(body, "plain"))

        context = ssl.create_default_context()
        try:
            if self.port == 465:
                with smtplib.SMTP_SSL(
                    self.host, self.port, context=context, timeout=self.timeout
                ) as server:
                    self._login(server)
                    server.send_message(message)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    if self.use_tls:
                        server.starttls(context=context)
                    self._login(server)
                    server.send_message(message)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending to {recipient_email}: {e}")
            return False

        logger.info(f"Email sent successfully to {recipient_email}")
        return True

    def _login(self, server: smtplib.SMTP) -> None:
        if self.user and self.password:
            server.login(self.user, self.password)


class LogNotifier:
    """Development notifier: logs the message instead of delivering it."""

    async def send(self, recipient_email: str, subject: str, body: str) -> bool:
        logger.info("Notification for %s: %s\n%s", recipient_email, subject, body)
        return True


def build_notifier(settings: Settings) -> Notifier:
    """Pick the SMTP notifier when SMTP is configured, otherwise log only."""
    if settings.smtp_host:
        return SmtpNotifier(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            sender_email=settings.sender_email,
            sender_name=settings.sender_name,
            use_tls=settings.smtp_use_tls,
        )
    logger.info("SMTP not configured, notifications will be logged only")
    return LogNotifier()


@dataclass
class DispatchReport:
    """Per-recipient delivery results of one notification."""

    event: NotificationEvent
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def render_message(
    event: NotificationEvent, incident: IncidentRecord, monitor: MonitorSnapshot
) -> tuple[str, str]:
    """Build subject and body for an incident transition."""
    label = monitor.name or monitor.url
    if event == "resolved":
        subject = f"[Upwatch] RESOLVED: {label} is back up"
        lines = [
            f"Monitor {label} has recovered.",
            f"URL: {monitor.url}",
            f"Down since: {incident.opened_at.isoformat()}",
            f"Resolved at: {incident.resolved_at.isoformat() if incident.resolved_at else 'unknown'}",
        ]
    else:
        prefix = "STILL DOWN" if event == "renotify" else "DOWN"
        subject = f"[Upwatch] {prefix}: {label}"
        lines = [
            f"Monitor {label} is down.",
            f"URL: {monitor.url}",
            f"Down since: {incident.opened_at.isoformat()}",
        ]
    if incident.summary:
        lines.append(f"Details: {incident.summary}")
    lines.append(f"Incident: {incident.id}")
    return subject, "\n".join(lines)


class NotifierDispatcher:
    """Sends one message per recipient for each incident transition."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    async def notify(
        self,
        event: NotificationEvent,
        incident: IncidentRecord,
        monitor: MonitorSnapshot,
        recipients: list[AlertRecipientRecord],
    ) -> DispatchReport:
        """Fan an incident transition out to every recipient.

        Never raises: send failures and exceptions are logged and reported.
        """
        report = DispatchReport(event=event)
        if not recipients:
            logger.info(f"No alert recipients for monitor {monitor.id}, skipping {event} notice")
            return report

        subject, body = render_message(event, incident, monitor)
        results = await asyncio.gather(
            *(self.notifier.send(r.email, subject, body) for r in recipients),
            return_exceptions=True,
        )
        for recipient, result in zip(recipients, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    f"Notifier raised for {recipient.email} on incident {incident.id}: {result}"
                )
                report.failed.append(recipient.email)
            elif result:
                report.sent.append(recipient.email)
            else:
                logger.warning(f"Notifier failed for {recipient.email} on incident {incident.id}")
                report.failed.append(recipient.email)

        logger.info(
            f"Incident {incident.id} {event}: notified {len(report.sent)}, "
            f"failed {len(report.failed)}"
        )
        return report
