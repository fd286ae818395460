"""Tests for the monitor service and the periodic scheduler."""

from __future__ import annotations

import asyncio

import pytest

from app.models.firewall import FirewallCreateRequest, FirewallStatus
from app.services.alerts import AlertKind
from app.services.scheduler import MonitorScheduler
from app.services.store import TargetNotFound


def _create(fid: str, host: str = "203.0.113.10") -> FirewallCreateRequest:
    return FirewallCreateRequest(id=fid, name=fid.upper(), host=host, username="admin", password="pw")


class FlakySessions:
    """Fails for one host, succeeds for everything else."""

    def __init__(self, good, bad_host: str) -> None:
        self._good = good
        self._bad_host = bad_host

    async def run_session(self, target, commands, end_marker, timeout=None):
        if target.host == self._bad_host:
            raise RuntimeError("worker pool exhausted")
        return await self._good.run_session(target, commands, end_marker, timeout)


class TestMonitorService:
    async def test_probe_success(self, context):
        await context.store.add(_create("fw-1"))
        outcome = await context.monitor.probe("fw-1")

        assert outcome.attempted and outcome.success
        assert outcome.record.status == FirewallStatus.online
        assert outcome.record.summary.cpu_count == 4
        assert context.notifier.sent == [("fw-1", AlertKind.recovered)]

    async def test_probe_failure_without_history(self, context, mock_sessions):
        mock_sessions.success = False
        mock_sessions.error = "Authentication failed"
        await context.store.add(_create("fw-1"))

        outcome = await context.monitor.probe("fw-1")

        assert outcome.attempted and outcome.success is False
        assert outcome.error == "Authentication failed"
        assert outcome.record.last_seen is None
        assert outcome.record.summary.last_error.message == "Authentication failed"
        # offline -> offline raises nothing
        assert context.notifier.sent == []
        assert context.throttle.state("fw-1").failure_count == 1

    async def test_unknown_target(self, context):
        with pytest.raises(TargetNotFound):
            await context.monitor.probe("ghost")

    async def test_throttled_probe_returns_stored_record(self, context, mock_sessions):
        await context.store.add(_create("fw-1"))
        await context.monitor.probe("fw-1")
        outcome = await context.monitor.probe("fw-1")

        assert outcome.attempted is False
        assert outcome.cooldown is True
        assert outcome.record.status == FirewallStatus.online
        assert len(mock_sessions.calls) == 1


class TestScheduler:
    async def test_cycle_isolates_failures(self, context, mock_sessions):
        await context.store.add(_create("fw-good", "203.0.113.10"))
        await context.store.add(_create("fw-bad", "198.51.100.99"))
        context.monitor._sessions = FlakySessions(mock_sessions, "198.51.100.99")

        failed = await context.scheduler.run_cycle()

        assert failed == 1
        assert (await context.store.get("fw-good")).status == FirewallStatus.online
        assert (await context.store.get("fw-bad")).status == FirewallStatus.offline

    async def test_disabled_scheduler_does_not_start(self, context):
        context.scheduler.start()
        assert context.scheduler.running is False

    async def test_start_and_stop(self, context, test_settings):
        test_settings.fwmon_scheduler_enabled = True
        test_settings.fwmon_monitor_interval_seconds = 0.01
        await context.store.add(_create("fw-1"))
        scheduler = MonitorScheduler(context.monitor, test_settings)

        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.2)
        await scheduler.stop()

        assert scheduler.running is False
        assert (await context.store.get("fw-1")).status == FirewallStatus.online
