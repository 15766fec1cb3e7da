"""Caching database proxy composed of a connection pool and a cache store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from dbproxy.cache import MISS, CacheStore
from dbproxy.invalidation import InvalidationRules
from dbproxy.monitoring import timed
from dbproxy.pool import ConnectionPool, PoolStats
from dbproxy.provider import DatabaseConnection


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProxyStats:
    hits: int
    misses: int
    invalidations: int
    cached_entries: int
    pool: PoolStats


class DatabaseProxy:
    """Same operations as a database connection, served through cache and pool.

    Reads are memoized under a fingerprint computed before the read starts.
    An invalidation racing with an in-flight read can leave that read's
    result cached until the next invalidation of its scope.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        cache: CacheStore,
        rules: Optional[InvalidationRules] = None,
    ) -> None:
        self.pool = pool
        self.cache = cache
        self.rules = rules or InvalidationRules()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    async def _cached(self, key: str, fetch: Callable[[DatabaseConnection], Awaitable[Any]]) -> Any:
        cached = await self.cache.get(key)
        if cached is not MISS:
            self._hits += 1
            logger.debug("proxy.cache_hit", key=key)
            return cached

        self._misses += 1
        logger.debug("proxy.cache_miss", key=key)
        async with self.pool.connection() as connection:
            value = await fetch(connection)
        await self.cache.put(key, value)
        return value

    async def _invalidate_scope(self, statement: str) -> int:
        prefix = self.rules.scope_for(statement)
        removed = await self.cache.invalidate(prefix)
        self._invalidations += 1
        logger.info("proxy.invalidated", scope=prefix or "*", removed=removed)
        return removed

    @timed
    async def read(self, key: str) -> Any:
        return await self._cached(key, lambda connection: connection.read(key))

    @timed
    async def write(self, key: str, value: Any) -> None:
        async with self.pool.connection() as connection:
            await connection.write(key, value)
        await self.cache.invalidate_key(key)
        await self._invalidate_scope(key)

    @timed
    async def query(self, sql: str) -> List[Dict[str, Any]]:
        return await self._cached(f"query:{sql}", lambda connection: connection.query(sql))

    @timed
    async def execute_update(self, sql: str) -> int:
        async with self.pool.connection() as connection:
            affected = await connection.execute_update(sql)
        await self._invalidate_scope(sql)
        return affected

    @timed
    async def get_user_data(self, user_id: str) -> Dict[str, Any]:
        return await self._cached(f"user:{user_id}", lambda connection: connection.get_user_data(user_id))

    @timed
    async def get_product_details(self, product_id: str) -> Dict[str, Any]:
        return await self._cached(
            f"product:{product_id}",
            lambda connection: connection.get_product_details(product_id),
        )

    async def shutdown(self) -> None:
        await self.pool.shutdown()
        logger.info("proxy.shutdown", hits=self._hits, misses=self._misses)

    def stats(self) -> ProxyStats:
        return ProxyStats(
            hits=self._hits,
            misses=self._misses,
            invalidations=self._invalidations,
            cached_entries=len(self.cache),
            pool=self.pool.stats(),
        )


__all__ = ["DatabaseProxy", "ProxyStats"]
