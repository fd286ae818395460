"""Alert decisions for probe outcomes and their delivery (webhook, e-mail)."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Optional

import httpx

from app.config import Settings, settings
from app.models.firewall import FirewallRecord, FirewallStatus
from app.models.summary import Summary
from app.utils.logging import get_logger

log = get_logger(__name__)


class NotificationError(Exception):
    """An explicit test delivery could not be made."""


class NotificationConfigError(NotificationError):
    """SMTP settings or recipients are missing."""


class AlertKind(str, Enum):
    recovered = "recovered"
    down = "down"
    disk_high = "disk_high"


@dataclass(frozen=True)
class Alert:
    kind: AlertKind
    subject: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    webhook: bool = True


def evaluate_alerts(
    name: str,
    previous_status: Optional[FirewallStatus],
    new_status: FirewallStatus,
    summary: Optional[Summary],
    threshold: int,
    error: Optional[str] = None,
) -> list[Alert]:
    """Decide which alerts a probe outcome raises.  Pure."""
    alerts: list[Alert] = []

    if new_status == FirewallStatus.online:
        if previous_status == FirewallStatus.offline:
            alerts.append(Alert(
                kind=AlertKind.recovered,
                subject=f"Firewall {name} is back online",
                message="The firewall has recovered and is now online.",
                data={"primary_ip": summary.primary_ip} if summary else {},
            ))
        if summary is not None and summary.disk is not None and summary.disk.percent > threshold:
            alerts.append(Alert(
                kind=AlertKind.disk_high,
                subject=f"High disk usage on {name}",
                message=f"Disk usage is at {summary.disk.percent}%. Consider cleaning up.",
                data={"disk_percent": summary.disk.percent},
                webhook=False,
            ))
    elif previous_status == FirewallStatus.online:
        alerts.append(Alert(
            kind=AlertKind.down,
            subject=f"Firewall {name} is DOWN",
            message=f"Unable to connect: {error or 'unknown error'}",
            data={"error": error},
        ))
    return alerts


class Notifier:
    """Delivers alerts; alert delivery problems are logged and never raised."""

    def __init__(self, cfg: Settings | None = None, http: httpx.AsyncClient | None = None) -> None:
        self._cfg = cfg or settings
        self._http = http

    @property
    def enabled(self) -> bool:
        return self._cfg.fwmon_notifications_enabled

    async def notify(self, record: FirewallRecord, alert: Alert) -> None:
        if not self.enabled:
            return
        log.info("alert.raised", firewall=record.id, kind=alert.kind.value)
        await self.send_email(record, alert)
        if alert.webhook:
            await self.send_webhook(record, alert)

    # ── webhook ───────────────────────────────────────────────────────

    def webhook_payload(self, record: FirewallRecord, alert: Alert) -> dict[str, Any]:
        return {
            "alert": alert.kind.value,
            "message": alert.message,
            "firewall": {"name": record.name, "ip": record.host},
            "data": alert.data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def send_webhook(self, record: FirewallRecord, alert: Alert) -> None:
        url = self._cfg.fwmon_webhook_url
        if not url:
            return
        payload = self.webhook_payload(record, alert)
        try:
            if self._http is not None:
                resp = await self._http.post(url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    resp = await client.post(url, json=payload)
            log.info("alert.webhook_sent", firewall=record.id, status=resp.status_code)
        except httpx.HTTPError as exc:
            log.warning("alert.webhook_failed", firewall=record.id, error=str(exc))

    # ── e-mail ────────────────────────────────────────────────────────

    def recipients(self, record: FirewallRecord) -> list[str]:
        return list(record.alert_emails) or self._cfg.alert_recipients

    def _send_email_sync(self, recipients: list[str], subject: str, body: str) -> None:
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self._cfg.fwmon_smtp_from or self._cfg.fwmon_smtp_user
        msg["To"] = ", ".join(recipients)
        with smtplib.SMTP(self._cfg.fwmon_smtp_host, self._cfg.fwmon_smtp_port, timeout=10) as server:
            server.starttls()
            if self._cfg.fwmon_smtp_user:
                server.login(self._cfg.fwmon_smtp_user, self._cfg.fwmon_smtp_password)
            server.send_message(msg)

    async def send_email(self, record: FirewallRecord, alert: Alert) -> None:
        recipients = self.recipients(record)
        if not self._cfg.fwmon_smtp_host or not recipients:
            return
        body = f"{alert.message}\n\nFirewall: {record.name} ({record.host})\n"
        try:
            await asyncio.to_thread(
                self._send_email_sync, recipients, f"[fwmon] {alert.subject}", body,
            )
            log.info("alert.email_sent", firewall=record.id, recipients=len(recipients))
        except (smtplib.SMTPException, OSError) as exc:
            log.warning("alert.email_failed", firewall=record.id, error=str(exc))

    async def send_test_email(self, recipients: list[str] | None = None) -> list[str]:
        """Send a test message and report problems instead of logging them.

        Works whether or not notifications are enabled, so SMTP settings can
        be checked before alerts are switched on.
        """
        to = list(recipients or self._cfg.alert_recipients)
        if not self._cfg.fwmon_smtp_host:
            raise NotificationConfigError("SMTP host is not configured")
        if not to:
            raise NotificationConfigError("no alert recipients configured")
        body = (
            "This is a test message from the pfSense monitor.\n"
            "If you received it, alert e-mail delivery works.\n"
        )
        try:
            await asyncio.to_thread(self._send_email_sync, to, "[fwmon] Test e-mail", body)
        except (smtplib.SMTPException, OSError) as exc:
            log.warning("alert.test_email_failed", error=str(exc))
            raise NotificationError(f"SMTP delivery failed: {exc}") from exc
        log.info("alert.test_email_sent", recipients=len(to))
        return to
