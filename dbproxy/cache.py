"""In-memory async cache store with prefix and predicate invalidation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import structlog


logger = structlog.get_logger(__name__)


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()

InvalidationScope = Union[str, Callable[[str], bool], None]


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[datetime] = None

    def is_expired(self) -> bool:
        return self.expires_at is not None and datetime.now(timezone.utc) > self.expires_at


class CacheStore:
    """Key to value memoization; last writer wins, no versioning."""

    def __init__(self, default_ttl_seconds: Optional[float] = None) -> None:
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._default_ttl = default_ttl_seconds

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        entry = self._cache.get(key)
        return entry is not None and not entry.is_expired()

    def keys(self) -> List[str]:
        return [key for key, entry in self._cache.items() if not entry.is_expired()]

    async def get(self, key: str) -> Any:
        """Return the cached value or ``MISS``; expired entries read as a miss."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.is_expired():
                return MISS
            return entry.value

    async def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = None if ttl is None else datetime.now(timezone.utc) + timedelta(seconds=ttl)
        async with self._lock:
            self._drop_expired()
            self._cache[key] = CacheEntry(value=value, expires_at=expires_at)

    def _drop_expired(self) -> int:
        expired = [key for key, entry in self._cache.items() if entry.is_expired()]
        for key in expired:
            del self._cache[key]
        return len(expired)

    async def prune(self) -> int:
        """Delete expired entries and return how many were removed."""
        async with self._lock:
            removed = self._drop_expired()
        if removed:
            logger.debug("cache.prune", removed=removed)
        return removed

    async def invalidate(self, scope: InvalidationScope = None) -> int:
        """Remove entries matching a key prefix or predicate; ``None`` clears everything."""
        async with self._lock:
            self._drop_expired()
            if scope is None:
                removed = len(self._cache)
                self._cache.clear()
                logger.info("cache.invalidate", scope="*", removed=removed)
                return removed

            matches = scope if callable(scope) else (lambda key, prefix=scope: key.startswith(prefix))
            stale = [key for key in self._cache if matches(key)]
            for key in stale:
                del self._cache[key]
        logger.info(
            "cache.invalidate",
            scope=scope if isinstance(scope, str) else getattr(scope, "__name__", "predicate"),
            removed=len(stale),
        )
        return len(stale)

    async def invalidate_key(self, key: str) -> bool:
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def clear(self) -> None:
        await self.invalidate(None)


__all__ = ["MISS", "CacheEntry", "CacheStore", "InvalidationScope"]
