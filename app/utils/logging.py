"""structlog configuration shared by the whole service."""

from __future__ import annotations

import logging
import sys

import structlog

from app.config import Settings, settings


def setup_logging(cfg: Settings | None = None) -> None:
    """Configure stdlib logging and structlog once at startup."""
    _cfg = cfg or settings
    level = getattr(logging, _cfg.fwmon_log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # paramiko is chatty at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("scrapli").setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if _cfg.fwmon_log_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
