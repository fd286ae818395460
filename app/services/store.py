"""JSON-file backed firewall store with credentials encrypted at rest."""

from __future__ import annotations

import asyncio
import base64
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from app.config import Settings, settings
from app.models.firewall import (
    ConnectionTarget,
    FirewallCreateRequest,
    FirewallRecord,
    FirewallStatus,
    FirewallUpdateRequest,
)
from app.models.responses import StatsResponse
from app.models.summary import Summary
from app.utils.logging import get_logger

log = get_logger(__name__)

_KDF_SALT = b"fwmon-credential-store"
_KDF_ITERATIONS = 100_000


class StoreError(Exception):
    """The data file or a stored credential could not be read or written."""


class DuplicateTarget(StoreError):
    """A firewall with the same id already exists."""


class TargetNotFound(KeyError):
    def __init__(self, target_id: str) -> None:
        super().__init__(target_id)
        self.target_id = target_id

    def __str__(self) -> str:
        return f"Firewall '{self.target_id}' not found"


class StoredFirewall(FirewallRecord):
    """On-disk shape: the public record plus encrypted credentials."""

    password_enc: str = ""
    private_key_enc: str = ""


def derive_fernet(secret: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode())))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FirewallStore:
    def __init__(self, cfg: Settings | None = None, path: str | Path | None = None) -> None:
        self._cfg = cfg or settings
        self._path = Path(path or self._cfg.fwmon_data_file)
        self._fernet = derive_fernet(self._cfg.fwmon_encryption_key)
        self._lock = asyncio.Lock()
        self._records: Optional[dict[str, StoredFirewall]] = None

    # ── crypto ────────────────────────────────────────────────────────

    def _encrypt(self, value: str) -> str:
        if not value:
            return ""
        return self._fernet.encrypt(value.encode()).decode()

    def _decrypt(self, token: str) -> Optional[str]:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise StoreError("stored credential cannot be decrypted") from exc

    # ── file I/O ──────────────────────────────────────────────────────

    def _read_sync(self) -> dict[str, StoredFirewall]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
            return {
                fid: StoredFirewall.model_validate(data)
                for fid, data in raw.get("firewalls", {}).items()
            }
        except (OSError, ValueError, ValidationError) as exc:
            raise StoreError(f"cannot read {self._path}: {exc}") from exc

    def _write_sync(self, records: dict[str, StoredFirewall]) -> None:
        payload = {
            "firewalls": {fid: rec.model_dump(mode="json") for fid, rec in records.items()},
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".firewalls-")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp, self._path)
        except OSError as exc:
            raise StoreError(f"cannot write {self._path}: {exc}") from exc

    async def _loaded(self) -> dict[str, StoredFirewall]:
        if self._records is None:
            self._records = await asyncio.to_thread(self._read_sync)
            log.info("store.loaded", path=str(self._path), count=len(self._records))
        return self._records

    async def _save(self) -> None:
        assert self._records is not None
        await asyncio.to_thread(self._write_sync, dict(self._records))

    @staticmethod
    def _public(rec: StoredFirewall) -> FirewallRecord:
        return FirewallRecord.model_validate(
            rec.model_dump(exclude={"password_enc", "private_key_enc"}),
        )

    def _require(self, records: dict[str, StoredFirewall], target_id: str) -> StoredFirewall:
        rec = records.get(target_id)
        if rec is None:
            raise TargetNotFound(target_id)
        return rec

    # ── queries ───────────────────────────────────────────────────────

    async def list(self) -> list[FirewallRecord]:
        async with self._lock:
            records = await self._loaded()
            return [self._public(r) for r in records.values()]

    async def get(self, target_id: str) -> FirewallRecord:
        async with self._lock:
            return self._public(self._require(await self._loaded(), target_id))

    async def get_target(self, target_id: str) -> ConnectionTarget:
        """Address plus decrypted credentials, for the SSH layer only."""
        async with self._lock:
            rec = self._require(await self._loaded(), target_id)
            return ConnectionTarget(
                id=rec.id,
                host=rec.host,
                port=rec.port,
                username=rec.username,
                password=self._decrypt(rec.password_enc),
                private_key=self._decrypt(rec.private_key_enc),
            )

    async def stats(self) -> StatsResponse:
        async with self._lock:
            records = (await self._loaded()).values()
            online = sum(1 for r in records if r.status == FirewallStatus.online)
            return StatsResponse(total=len(records), online=online, offline=len(records) - online)

    # ── mutations ─────────────────────────────────────────────────────

    async def add(self, req: FirewallCreateRequest) -> FirewallRecord:
        async with self._lock:
            records = await self._loaded()
            if req.id in records:
                raise DuplicateTarget(f"Firewall '{req.id}' already exists")
            rec = StoredFirewall(
                id=req.id,
                name=req.name,
                host=req.host,
                port=req.port,
                username=req.username,
                alert_emails=req.alert_emails,
                password_enc=self._encrypt(req.password),
                private_key_enc=self._encrypt(req.private_key),
            )
            records[rec.id] = rec
            await self._save()
            log.info("store.added", firewall=rec.id, host=rec.host)
            return self._public(rec)

    async def update(self, target_id: str, req: FirewallUpdateRequest) -> FirewallRecord:
        async with self._lock:
            records = await self._loaded()
            rec = self._require(records, target_id)
            changes = req.model_dump(exclude_unset=True, exclude={"password", "private_key"})
            changes = {k: v for k, v in changes.items() if v is not None}
            if req.password is not None:
                changes["password_enc"] = self._encrypt(req.password)
            if req.private_key is not None:
                changes["private_key_enc"] = self._encrypt(req.private_key)
            changes["updated_at"] = _utcnow()
            rec = rec.model_copy(update=changes)
            records[target_id] = rec
            await self._save()
            log.info("store.updated", firewall=target_id, fields=sorted(changes))
            return self._public(rec)

    async def delete(self, target_id: str) -> None:
        async with self._lock:
            records = await self._loaded()
            self._require(records, target_id)
            del records[target_id]
            await self._save()
            log.info("store.deleted", firewall=target_id)

    async def persist_status(
        self,
        target_id: str,
        status: FirewallStatus,
        summary: Optional[Summary],
        *,
        touch_last_seen: bool = True,
    ) -> FirewallRecord:
        """Store a probe outcome; ``last_seen`` only moves on contact."""
        async with self._lock:
            records = await self._loaded()
            rec = self._require(records, target_id)
            now = _utcnow()
            changes: dict = {"status": status, "summary": summary, "updated_at": now}
            if touch_last_seen:
                changes["last_seen"] = now
            rec = rec.model_copy(update=changes)
            records[target_id] = rec
            await self._save()
            return self._public(rec)
