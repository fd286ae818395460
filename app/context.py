"""Explicit wiring of the long-lived services."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from app.config import Settings, settings
from app.services.alerts import Notifier
from app.services.monitor import MonitorService
from app.services.scheduler import MonitorScheduler
from app.services.ssh_manager import ChannelFactory, SSHSessionManager
from app.services.store import FirewallStore
from app.services.throttle import ConnectThrottle


@dataclass
class AppContext:
    settings: Settings
    store: FirewallStore
    sessions: SSHSessionManager
    throttle: ConnectThrottle
    notifier: Notifier
    monitor: MonitorService
    scheduler: MonitorScheduler

    def close(self) -> None:
        self.sessions.shutdown()


def build_context(
    cfg: Settings | None = None,
    *,
    channel_factory: ChannelFactory | None = None,
    notifier: Notifier | None = None,
) -> AppContext:
    cfg = cfg or settings
    store = FirewallStore(cfg)
    sessions = SSHSessionManager(cfg, channel_factory=channel_factory)
    throttle = ConnectThrottle(cfg)
    notifier = notifier or Notifier(cfg)
    monitor = MonitorService(store, sessions, throttle, notifier, cfg)
    return AppContext(
        settings=cfg,
        store=store,
        sessions=sessions,
        throttle=throttle,
        notifier=notifier,
        monitor=monitor,
        scheduler=MonitorScheduler(monitor, cfg),
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the context built at startup."""
    return request.app.state.context
