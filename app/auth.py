"""API key authentication dependency."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from app.context import AppContext, get_context

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    api_key: str | None = Security(_api_key_header),
    ctx: AppContext = Depends(get_context),
) -> str:
    """FastAPI dependency that enforces X-API-Key header.

    If FWMON_API_KEY is blank the check is skipped (dev convenience).
    """
    expected = ctx.settings.fwmon_api_key
    if not expected:
        return "no-key-configured"
    if api_key is None or api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return api_key
