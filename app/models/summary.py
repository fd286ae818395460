"""Structured metrics parsed from one pfSense console transcript."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class LoadAverages(BaseModel):
    model_config = ConfigDict(frozen=True)

    m1: float
    m5: float
    m15: float


class DiskUsage(BaseModel):
    """Root filesystem row from ``df -h /``."""

    model_config = ConfigDict(frozen=True)

    size: str
    used: str
    avail: str
    percent: int


class InterfaceAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ip: str
    friendly_label: Optional[str] = None


class GatewayStatus(str, Enum):
    online = "online"
    down = "down"
    degraded = "degraded"
    unknown = "unknown"


class Gateway(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    monitored_ip: str
    status: GatewayStatus = GatewayStatus.unknown
    interface: Optional[str] = None
    loss_percent: Optional[float] = None
    delay_ms: Optional[float] = None
    is_active: bool = False


class LastError(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    occurred_at: datetime


class Summary(BaseModel):
    """Immutable parse result; every field is optional / best effort."""

    model_config = ConfigDict(frozen=True)

    uptime_text: Optional[str] = None
    load_averages: Optional[LoadAverages] = None
    os_identifier: Optional[str] = None
    cpu_count: Optional[int] = None
    memory_human: Optional[str] = None
    disk: Optional[DiskUsage] = None
    interfaces: list[InterfaceAddress] = []
    ips: list[str] = []
    primary_ip: Optional[str] = None
    wan_interface_name: Optional[str] = None
    default_gateway_ip: Optional[str] = None
    gateways: list[Gateway] = []
    raw_truncated: str = ""
    last_error: Optional[LastError] = None

    def with_error(self, message: str, occurred_at: datetime) -> Summary:
        return self.model_copy(
            update={"last_error": LastError(message=message, occurred_at=occurred_at)},
        )

    def without_error(self) -> Summary:
        return self.model_copy(update={"last_error": None})
