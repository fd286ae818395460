"""Results passed between the SSH session driver and its callers."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from app.models.summary import Summary


class SessionResult(BaseModel):
    """Outcome of one interactive shell session."""

    success: bool
    transcript: str = ""
    error: Optional[str] = None
    elapsed_time: float = 0.0


class FetchResult(BaseModel):
    """Outcome of one stats fetch (session + parse)."""

    success: bool
    summary: Optional[Summary] = None
    transcript: str = ""
    error: Optional[str] = None
