"""
Alert delivery channels.

Each channel turns an Alert into one outbound notification. Channels raise
ChannelDeliveryError on failure; the dispatcher isolates them from each
other so one failing transport never blocks the rest.
"""

import asyncio
import json
import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any, Optional

import httpx

from vigil.config import Settings
from vigil.errors import ChannelDeliveryError, ChannelNotConfiguredError
from vigil.models.alert import Alert
from vigil.models.severity import Severity
from vigil.security.encryption import sign_payload
from vigil.store.cache import CacheStore
from vigil.utils import utc_isoformat, utcnow

logger = logging.getLogger(__name__)

SERVICE_NAME = "Vigil Security Monitoring"
USER_AGENT = "Vigil-SecurityMonitoring/1.0"
AUDIT_ALERT_TTL = 30 * 24 * 3600


class AlertChannel(ABC):
    """Base class for alert transports."""

    name: str = "channel"

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        """
        Deliver an alert.

        Raises:
            ChannelDeliveryError: If the transport failed
        """


def _email_subject(alert: Alert) -> str:
    urgency = {Severity.CRITICAL: "[URGENT] ", Severity.HIGH: "[IMPORTANT] "}.get(alert.level, "")
    payload = alert.payload
    if alert.type.value == "threat":
        detail = f"Threat detected - {', '.join(payload.get('threat_types', []))}"
    elif alert.type.value == "compliance":
        detail = f"Policy violation detected - {len(payload.get('violations', []))} violation(s)"
    else:
        detail = f"System alert - {payload.get('status', 'unknown')}"
    return f"[Vigil Security] {urgency}{detail}"


def _email_body(alert: Alert) -> str:
    lines = [
        f"Vigil security alert ({alert.level.value.upper()})",
        "",
        f"ID:        {alert.id}",
        f"Type:      {alert.type.value}",
        f"Source:    {alert.identifier}",
        f"Detected:  {utc_isoformat(alert.timestamp)}",
    ]
    if "threat_types" in alert.payload:
        lines.append(f"Threats:   {', '.join(alert.payload['threat_types'])}")
    if "compliance_score" in alert.payload:
        lines.append(f"Score:     {alert.payload['compliance_score'] * 100:.1f}%")
    if "message" in alert.payload:
        lines.append(f"Message:   {alert.payload['message']}")
    if alert.recommended_actions:
        lines += ["", "Recommended actions:"]
        lines += [f"  - {action}" for action in alert.recommended_actions]
    lines += ["", "This message was sent automatically by Vigil."]
    return "\n".join(lines)


class EmailChannel(AlertChannel):
    """SMTP delivery; the blocking client runs in a worker thread."""

    name = "email"

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        recipient: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.recipient = recipient
        self._user = user
        self._password = password
        self.timeout = timeout

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.port == 587:
                smtp.starttls()
            if self._user and self._password:
                smtp.login(self._user, self._password)
            smtp.send_message(message)

    def _message(self, subject: str, body: str, high_priority: bool = False) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = self.recipient
        message["Subject"] = subject
        if high_priority:
            message["X-Priority"] = "1"
        message.set_content(body)
        return message

    async def _send_message(self, message: EmailMessage) -> None:
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelDeliveryError(self.name, str(e)) from e

    async def send(self, alert: Alert) -> None:
        message = self._message(
            _email_subject(alert),
            _email_body(alert),
            high_priority=alert.level == Severity.CRITICAL,
        )
        await self._send_message(message)
        logger.debug(f"Email alert {alert.id} sent to {self.recipient}")

    async def send_report(self, subject: str, body: str, report: dict[str, Any]) -> None:
        """Send a report mail with the full report attached as JSON."""
        message = self._message(subject, body)
        message.add_attachment(
            json.dumps(report, indent=2, default=str).encode("utf-8"),
            maintype="application",
            subtype="json",
            filename=f"security-report-{report.get('date', 'daily')}.json",
        )
        await self._send_message(message)


class WebhookChannel(AlertChannel):
    """
    JSON POST to a webhook, signed with HMAC-SHA256.

    The signature covers the exact request body and is sent in the
    X-Alert-Signature header as ``sha256=<hex>``.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        environment: str = "development",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._secret = secret
        self.environment = environment
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, alert: Alert) -> None:
        payload = {
            **alert.to_dict(),
            "service": SERVICE_NAME,
            "environment": self.environment,
        }
        body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self._secret:
            headers["X-Alert-Signature"] = sign_payload(self._secret, body)

        try:
            response = await self._client.post(self.url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(self.name, str(e)) from e
        logger.debug(f"Webhook alert {alert.id} delivered ({response.status_code})")

    async def close(self) -> None:
        await self._client.aclose()


class LogChannel(AlertChannel):
    """Structured log line; critical alerts log at ERROR."""

    name = "log"

    def __init__(self, alert_logger: Optional[logging.Logger] = None):
        self._logger = alert_logger or logging.getLogger("vigil.alerts.security")

    async def send(self, alert: Alert) -> None:
        level = logging.ERROR if alert.level == Severity.CRITICAL else logging.WARNING
        self._logger.log(level, f"SECURITY ALERT: {json.dumps(alert.to_dict(), default=str)}")


class AuditChannel(AlertChannel):
    """Keeps a copy of the alert in the cache for 30 days."""

    name = "audit"

    def __init__(self, cache: CacheStore, ttl: int = AUDIT_ALERT_TTL):
        self._cache = cache
        self.ttl = ttl

    async def send(self, alert: Alert) -> None:
        record = {
            **alert.to_dict(),
            "audit_timestamp": utc_isoformat(utcnow()),
            "source_system": "vigil",
        }
        try:
            await self._cache.set(f"audit:alert:{alert.id}", json.dumps(record), ttl=self.ttl)
        except Exception as e:
            raise ChannelDeliveryError(self.name, str(e)) from e


def build_channels(
    settings: Settings,
    cache: CacheStore,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict[str, AlertChannel]:
    """
    Create every channel whose transport is configured.

    Email needs an SMTP host plus sender and recipient; webhook needs a
    URL. Log and audit channels are always available.
    """
    channels: dict[str, AlertChannel] = {
        LogChannel.name: LogChannel(),
        AuditChannel.name: AuditChannel(cache),
    }

    if settings.smtp_host and settings.alert_email_to:
        channels[EmailChannel.name] = EmailChannel(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.alert_email_from or settings.smtp_user or "vigil@localhost",
            recipient=settings.alert_email_to,
            user=settings.smtp_user,
            password=settings.smtp_password,
            timeout=settings.alert_channel_timeout_seconds,
        )
    else:
        logger.warning("Email configuration missing, email alerts disabled")

    if settings.alert_webhook_url:
        channels[WebhookChannel.name] = WebhookChannel(
            url=settings.alert_webhook_url,
            secret=settings.alert_webhook_secret,
            timeout=settings.alert_channel_timeout_seconds,
            environment=settings.environment,
            client=http_client,
        )
    else:
        logger.warning("Webhook URL not configured, webhook alerts disabled")

    return channels


def require_channel(channels: dict[str, AlertChannel], name: str) -> AlertChannel:
    """Look up a channel by name."""
    try:
        return channels[name]
    except KeyError:
        raise ChannelNotConfiguredError(name, "no transport configured") from None
