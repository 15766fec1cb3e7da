"""Server-side application built on the caching database proxy."""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from dbproxy.cache import CacheStore
from dbproxy.config import Settings, get_settings
from dbproxy.exceptions import AcquireTimeout
from dbproxy.invalidation import InvalidationRules
from dbproxy.monitoring import with_request_id
from dbproxy.pool import ConnectionPool
from dbproxy.provider import ConnectionProvider, create_provider
from dbproxy.proxy import DatabaseProxy


logger = structlog.get_logger(__name__)


def build_proxy(
    settings: Optional[Settings] = None,
    provider: Optional[ConnectionProvider] = None,
) -> DatabaseProxy:
    """Wire provider, pool, cache and invalidation rules into a proxy."""
    settings = settings or get_settings()
    provider = provider or create_provider(settings.provider)
    pool = ConnectionPool(
        provider,
        capacity=settings.pool.capacity,
        acquire_timeout=settings.pool.acquire_timeout,
        retry_interval=settings.pool.retry_interval,
    )
    cache = CacheStore(default_ttl_seconds=settings.cache.ttl_seconds)
    return DatabaseProxy(pool, cache, InvalidationRules(settings.cache.scope_rules))


def _quote(value: str) -> str:
    return value.replace("'", "''")


class ServerApplication:
    """Request handlers that read through the proxy and retry pool timeouts."""

    def __init__(self, database: DatabaseProxy, *, max_attempts: int = 3) -> None:
        self.database = database
        self._max_attempts = max_attempts

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
            retry=retry_if_exception_type(AcquireTimeout),
            reraise=True,
        )

    @with_request_id
    async def handle_user_request(self, user_id: str) -> Dict[str, Any]:
        async for attempt in self._retrying():
            with attempt:
                user = await self.database.get_user_data(user_id)
        logger.info("app.user_request", user_id=user_id)
        return user

    @with_request_id
    async def handle_product_request(self, product_id: str) -> Dict[str, Any]:
        async for attempt in self._retrying():
            with attempt:
                product = await self.database.get_product_details(product_id)
        logger.info("app.product_request", product_id=product_id)
        return product

    @with_request_id
    async def update_user(self, user_id: str, new_name: str) -> int:
        sql = f"UPDATE users SET name = '{_quote(new_name)}' WHERE id = '{_quote(user_id)}'"
        async for attempt in self._retrying():
            with attempt:
                affected = await self.database.execute_update(sql)
        logger.info("app.user_updated", user_id=user_id, rows=affected)
        return affected

    async def shutdown(self) -> None:
        await self.database.shutdown()


__all__ = ["ServerApplication", "build_proxy"]
