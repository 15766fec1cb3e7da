"""Monitoring helpers for structured logging and timing."""

from __future__ import annotations

import time
from contextvars import ContextVar
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog


request_id: ContextVar[str] = ContextVar("request_id", default="")


FuncType = TypeVar("FuncType", bound=Callable[..., Awaitable[Any]])


def with_request_id(func: FuncType) -> FuncType:
    @wraps(func)
    async def wrapper(*args, **kwargs):
        token = request_id.set(str(time.time_ns()))
        structlog.contextvars.bind_contextvars(request_id=request_id.get())
        try:
            return await func(*args, **kwargs)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
            request_id.reset(token)

    return wrapper  # type: ignore[return-value]


def timed(func: FuncType) -> FuncType:
    @wraps(func)
    async def wrapper(*args, **kwargs):
        logger = structlog.get_logger(func.__module__)
        started = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
            duration = time.perf_counter() - started
            logger.debug("operation.complete", operation=func.__qualname__, duration_seconds=duration)
            return result
        except Exception as exc:
            duration = time.perf_counter() - started
            logger.warning(
                "operation.error",
                operation=func.__qualname__,
                duration_seconds=duration,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise

    return wrapper  # type: ignore[return-value]
