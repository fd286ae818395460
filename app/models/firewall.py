"""Firewall records and the connection target handed to the SSH core."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from app.models.summary import Summary


class FirewallStatus(str, Enum):
    online = "online"
    offline = "offline"


class ConnectionTarget(BaseModel):
    """Snapshot of a device's address and decrypted credentials."""

    model_config = ConfigDict(frozen=True)

    id: str
    host: str
    port: int = 22
    username: str
    password: Optional[str] = Field(default=None, repr=False)
    private_key: Optional[str] = Field(default=None, repr=False)


class FirewallRecord(BaseModel):
    """A stored firewall as exposed to API clients (no credentials)."""

    id: str
    name: str
    host: str
    port: int = 22
    username: str
    status: FirewallStatus = FirewallStatus.offline
    summary: Optional[Summary] = None
    alert_emails: list[str] = []
    last_seen: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FirewallCreateRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(min_length=1)
    password: str = ""
    private_key: str = ""
    alert_emails: list[str] = []


class FirewallUpdateRequest(BaseModel):
    """Partial update; credentials are kept unless supplied."""

    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None
    private_key: Optional[str] = None
    alert_emails: Optional[list[str]] = None


class ConnectionCheckRequest(BaseModel):
    """Ad-hoc address and credentials, tried once and never stored."""

    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(min_length=1)
    password: str = ""
    private_key: str = ""
