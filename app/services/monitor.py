"""Throttled probe of one firewall: fetch, persist, alert."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.config import Settings, settings
from app.models.commands import FetchResult
from app.models.firewall import FirewallRecord, FirewallStatus
from app.models.summary import Summary
from app.services.alerts import Notifier, evaluate_alerts
from app.services.fetch import fetch_stats
from app.services.ssh_manager import SSHSessionManager
from app.services.store import FirewallStore, StoreError
from app.services.throttle import ConnectThrottle
from app.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Result of one real connection attempt, shared by deduped callers."""

    record: FirewallRecord
    success: bool
    error: Optional[str] = None
    transcript: str = ""


@dataclass(frozen=True)
class ProbeOutcome:
    record: FirewallRecord
    attempted: bool
    success: Optional[bool] = None
    deduped: bool = False
    cooldown: bool = False
    retry_after_ms: int = 0
    error: Optional[str] = None
    transcript: str = ""


class MonitorService:
    def __init__(
        self,
        store: FirewallStore,
        sessions: SSHSessionManager,
        throttle: ConnectThrottle,
        notifier: Notifier,
        cfg: Settings | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._store = store
        self._sessions = sessions
        self._throttle = throttle
        self._notifier = notifier

    async def _probe_once(self, target_id: str) -> ProbeResult:
        previous = await self._store.get(target_id)
        try:
            target = await self._store.get_target(target_id)
        except StoreError as exc:
            log.error("monitor.credentials_unusable", firewall=target_id, error=str(exc))
            fetched = FetchResult(success=False, error=str(exc))
        else:
            fetched = await fetch_stats(
                self._sessions, target, timeout=self._cfg.fwmon_ssh_session_timeout_seconds,
            )

        if fetched.success and fetched.summary is not None:
            status = FirewallStatus.online
            summary = fetched.summary.without_error()
            record = await self._store.persist_status(target_id, status, summary)
            log.info("monitor.online", firewall=target_id, primary_ip=summary.primary_ip)
        else:
            status = FirewallStatus.offline
            error = fetched.error or "unknown error"
            base = previous.summary or Summary()
            summary = base.with_error(error, datetime.now(timezone.utc))
            record = await self._store.persist_status(
                target_id, status, summary, touch_last_seen=False,
            )
            log.warning("monitor.offline", firewall=target_id, error=error)

        for alert in evaluate_alerts(
            record.name,
            previous.status,
            status,
            summary,
            self._cfg.fwmon_disk_alert_percent,
            error=fetched.error,
        ):
            await self._notifier.notify(record, alert)

        return ProbeResult(
            record=record,
            success=status == FirewallStatus.online,
            error=None if status == FirewallStatus.online else fetched.error,
            transcript=fetched.transcript,
        )

    async def probe(self, target_id: str) -> ProbeOutcome:
        """Probe *target_id* through the connect throttle.

        Raises :class:`~app.services.store.TargetNotFound` for unknown ids.
        """
        current = await self._store.get(target_id)
        outcome = await self._throttle.run(target_id, lambda: self._probe_once(target_id))
        if not outcome.allowed:
            return ProbeOutcome(
                record=current,
                attempted=False,
                cooldown=True,
                retry_after_ms=outcome.retry_after_ms,
            )
        result = outcome.result
        assert result is not None
        return ProbeOutcome(
            record=result.record,
            attempted=True,
            success=result.success,
            deduped=outcome.deduped,
            error=result.error,
            transcript=result.transcript,
        )

    async def probe_all(self) -> list[ProbeOutcome | BaseException]:
        records = await self._store.list()
        return await asyncio.gather(
            *(self.probe(r.id) for r in records), return_exceptions=True,
        )
