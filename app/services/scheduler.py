"""Periodic monitoring loop."""

from __future__ import annotations

import asyncio
from typing import Optional

from app.config import Settings, settings
from app.services.monitor import MonitorService
from app.utils.logging import get_logger

log = get_logger(__name__)


class MonitorScheduler:
    """Probes every stored firewall once per interval."""

    def __init__(self, monitor: MonitorService, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._monitor = monitor
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_cycle(self) -> int:
        """One pass over all firewalls; returns how many probes failed."""
        results = await self._monitor.probe_all()
        failed = 0
        for res in results:
            if isinstance(res, BaseException):
                failed += 1
                log.error("scheduler.probe_error", error=str(res), error_type=type(res).__name__)
            elif res.attempted and not res.success:
                failed += 1
        log.info("scheduler.cycle_completed", firewalls=len(results), failed=failed)
        return failed

    async def _loop(self) -> None:
        interval = self._cfg.fwmon_monitor_interval_seconds
        while True:
            try:
                await self.run_cycle()
            except Exception:
                log.exception("scheduler.cycle_failed")
            await asyncio.sleep(interval)

    def start(self) -> None:
        if not self._cfg.fwmon_scheduler_enabled or self.running:
            return
        log.info("scheduler.started", interval=self._cfg.fwmon_monitor_interval_seconds)
        self._task = asyncio.create_task(self._loop(), name="fwmon-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("scheduler.stopped")
