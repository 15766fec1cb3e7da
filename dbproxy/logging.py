"""Structured logging setup utilities."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog


def configure_logging(
    handlers: Iterable[logging.Handler] | None = None,
    *,
    level: str = "INFO",
    json_logs: bool = True,
) -> None:
    """Configure stdlib logging and structlog with JSON or console output."""

    if handlers is None:
        handlers = [logging.StreamHandler()]

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=list(handlers),
        format="%(message)s",
        force=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
