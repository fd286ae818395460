"""Tests for the JSON firewall store."""

from __future__ import annotations

import json

import pytest

from app.config import Settings
from app.models.firewall import (
    FirewallCreateRequest,
    FirewallStatus,
    FirewallUpdateRequest,
)
from app.models.summary import Summary
from app.services.store import (
    DuplicateTarget,
    FirewallStore,
    StoreError,
    TargetNotFound,
)


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "firewalls.json"


@pytest.fixture
def store(data_file):
    return FirewallStore(Settings(fwmon_encryption_key="unit-test-secret"), path=data_file)


def _create(**overrides) -> FirewallCreateRequest:
    data = dict(id="fw-1", name="HQ", host="203.0.113.10", username="admin", password="s3cret")
    data.update(overrides)
    return FirewallCreateRequest(**data)


class TestCrud:
    async def test_add_and_get(self, store):
        rec = await store.add(_create())
        assert rec.id == "fw-1"
        assert rec.status == FirewallStatus.offline
        assert (await store.get("fw-1")).name == "HQ"
        assert [r.id for r in await store.list()] == ["fw-1"]

    async def test_duplicate_id(self, store):
        await store.add(_create())
        with pytest.raises(DuplicateTarget):
            await store.add(_create())

    async def test_unknown_id(self, store):
        with pytest.raises(TargetNotFound):
            await store.get("nope")
        with pytest.raises(TargetNotFound):
            await store.delete("nope")

    async def test_update_keeps_credentials(self, store):
        await store.add(_create())
        rec = await store.update("fw-1", FirewallUpdateRequest(name="HQ-2"))
        assert rec.name == "HQ-2"
        target = await store.get_target("fw-1")
        assert target.password == "s3cret"

    async def test_update_replaces_credentials(self, store):
        await store.add(_create())
        await store.update("fw-1", FirewallUpdateRequest(private_key="-----KEY-----"))
        target = await store.get_target("fw-1")
        assert target.private_key == "-----KEY-----"
        assert target.password == "s3cret"

    async def test_delete(self, store):
        await store.add(_create())
        await store.delete("fw-1")
        assert await store.list() == []


class TestPersistence:
    async def test_credentials_encrypted_on_disk(self, store, data_file):
        await store.add(_create())
        text = data_file.read_text()
        assert "s3cret" not in text
        stored = json.loads(text)["firewalls"]["fw-1"]
        assert stored["password_enc"]
        assert stored["private_key_enc"] == ""

    async def test_reload_from_disk(self, store, data_file):
        await store.add(_create())
        again = FirewallStore(Settings(fwmon_encryption_key="unit-test-secret"), path=data_file)
        target = await again.get_target("fw-1")
        assert target.password == "s3cret"
        assert target.private_key is None

    async def test_wrong_key_cannot_decrypt(self, store, data_file):
        await store.add(_create())
        other = FirewallStore(Settings(fwmon_encryption_key="another-secret"), path=data_file)
        with pytest.raises(StoreError):
            await other.get_target("fw-1")

    async def test_corrupt_file(self, data_file):
        data_file.write_text("{not json")
        broken = FirewallStore(Settings(), path=data_file)
        with pytest.raises(StoreError):
            await broken.list()

    async def test_public_record_has_no_secrets(self, store):
        rec = await store.add(_create())
        assert "password" not in rec.model_dump_json()


class TestStatus:
    async def test_persist_online_touches_last_seen(self, store):
        await store.add(_create())
        rec = await store.persist_status("fw-1", FirewallStatus.online, Summary(cpu_count=2))
        assert rec.status == FirewallStatus.online
        assert rec.summary.cpu_count == 2
        assert rec.last_seen is not None

    async def test_persist_failure_keeps_last_seen(self, store):
        await store.add(_create())
        seen = (await store.persist_status("fw-1", FirewallStatus.online, Summary())).last_seen
        rec = await store.persist_status(
            "fw-1", FirewallStatus.offline, Summary(), touch_last_seen=False,
        )
        assert rec.status == FirewallStatus.offline
        assert rec.last_seen == seen

    async def test_stats(self, store):
        await store.add(_create(id="a"))
        await store.add(_create(id="b"))
        await store.persist_status("a", FirewallStatus.online, None)
        stats = await store.stats()
        assert (stats.total, stats.online, stats.offline) == (2, 1, 1)
