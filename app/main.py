"""FastAPI application entry-point."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from app import __version__
from app.context import build_context
from app.routers import firewalls, health, notifications
from app.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    setup_logging()
    ctx = build_context()
    app.state.context = ctx
    ctx.scheduler.start()
    log.info("app.started", version=__version__)
    yield
    # Shutdown: stop polling, release SSH workers
    await ctx.scheduler.stop()
    ctx.close()


app = FastAPI(
    title="pfSense Monitor API",
    description="Multi-firewall pfSense monitoring over the SSH console",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(firewalls.router)
app.include_router(notifications.router)
