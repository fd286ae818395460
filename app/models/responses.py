"""Common API response models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from app.models.firewall import FirewallRecord
from app.models.summary import Summary


class HealthResponse(BaseModel):
    status: str
    version: str
    scheduler_running: bool = False


class ConnectResponse(BaseModel):
    firewall: FirewallRecord
    connect_attempted: bool
    connect_success: Optional[bool] = None
    connect_deduped: bool = False
    connect_cooldown: bool = False
    retry_after_ms: int = 0
    error: Optional[str] = None


class DiagnosticResponse(BaseModel):
    success: bool
    connect_attempted: bool = True
    retry_after_ms: int = 0
    error: Optional[str] = None
    raw_output: str = ""
    summary: Optional[Summary] = None
    bytes_received: int = 0
    lines_received: int = 0


class StatsResponse(BaseModel):
    total: int
    online: int
    offline: int


class ErrorResponse(BaseModel):
    detail: str


class ConnectionCheckResponse(BaseModel):
    success: bool
    error: Optional[str] = None
    summary: Optional[Summary] = None


class EmailCheckRequest(BaseModel):
    recipients: list[str] = []


class EmailCheckResponse(BaseModel):
    sent: bool
    recipients: list[str]
