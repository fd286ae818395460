"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Force settings to use test-safe defaults before any import
os.environ.setdefault("FWMON_API_KEY", "")
os.environ.setdefault("FWMON_SCHEDULER_ENABLED", "false")
os.environ.setdefault("FWMON_NOTIFICATIONS_ENABLED", "false")

import pytest
from httpx import ASGITransport, AsyncClient

from app.config import Settings
from app.context import AppContext
from app.services.alerts import Notifier
from app.services.monitor import MonitorService
from app.services.scheduler import MonitorScheduler
from app.services.store import FirewallStore
from app.services.throttle import ConnectThrottle
from tests.mock_ssh import MockSessionManager


class RecordingNotifier(Notifier):
    """Collects alerts instead of delivering them."""

    def __init__(self, cfg: Settings) -> None:
        super().__init__(cfg)
        self.sent: list = []

    async def notify(self, record, alert) -> None:
        self.sent.append((record.id, alert.kind))


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        fwmon_api_key="",
        fwmon_data_file=str(tmp_path / "firewalls.json"),
        fwmon_encryption_key="test-secret",
        fwmon_scheduler_enabled=False,
        fwmon_notifications_enabled=False,
    )


@pytest.fixture
def mock_sessions():
    """Provide a fresh MockSessionManager."""
    return MockSessionManager()


@pytest.fixture
def context(test_settings, mock_sessions) -> AppContext:
    """Isolated service graph wired to the mock SSH layer."""
    store = FirewallStore(test_settings)
    throttle = ConnectThrottle(test_settings)
    notifier = RecordingNotifier(test_settings)
    monitor = MonitorService(store, mock_sessions, throttle, notifier, test_settings)
    return AppContext(
        settings=test_settings,
        store=store,
        sessions=mock_sessions,
        throttle=throttle,
        notifier=notifier,
        monitor=monitor,
        scheduler=MonitorScheduler(monitor, test_settings),
    )


@pytest.fixture
async def client(context):
    """Async test client with the isolated context injected."""
    from app.main import app as fastapi_app

    # ASGITransport does not run the lifespan
    fastapi_app.state.context = context
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    del fastapi_app.state.context
