"""Health-check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app import __version__
from app.auth import require_api_key
from app.context import AppContext, get_context
from app.models.responses import HealthResponse, StatsResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def service_health(ctx: AppContext = Depends(get_context)) -> HealthResponse:
    """Basic liveness probe (no auth required)."""
    return HealthResponse(
        status="ok",
        version=__version__,
        scheduler_running=ctx.scheduler.running,
    )


@router.get(
    "/stats",
    response_model=StatsResponse,
    dependencies=[Depends(require_api_key)],
)
async def fleet_stats(ctx: AppContext = Depends(get_context)) -> StatsResponse:
    """Online / offline counts across all firewalls."""
    return await ctx.store.stats()
