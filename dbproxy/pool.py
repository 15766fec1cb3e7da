"""Bounded connection pool with reuse and cooperative waiting."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, Optional

import structlog

from dbproxy.exceptions import AcquireTimeout, InvalidState, PoolClosed, ProviderFailure, ProxyError
from dbproxy.provider import ConnectionProvider, DatabaseConnection


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PoolStats:
    capacity: int
    idle: int
    in_use: int
    created: int
    reused: int
    waits: int
    closed: bool


class ConnectionPool:
    """Lends at most ``capacity`` connections at once.

    Idle connections are reused first-in first-out. When every slot is taken,
    ``acquire`` waits on a condition and re-checks at least every
    ``retry_interval`` seconds until a connection is released, the optional
    deadline passes, or the pool shuts down.
    """

    def __init__(
        self,
        provider: ConnectionProvider,
        capacity: int = 3,
        *,
        acquire_timeout: Optional[float] = None,
        retry_interval: float = 0.1,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if retry_interval <= 0:
            raise ValueError("retry_interval must be positive")
        self.provider = provider
        self.capacity = capacity
        self.acquire_timeout = acquire_timeout
        self.retry_interval = retry_interval

        self._idle: Deque[DatabaseConnection] = deque()
        self._in_use: Dict[int, DatabaseConnection] = {}
        # connections lent out when shutdown ran; their late release is accepted
        self._revoked: Dict[int, DatabaseConnection] = {}
        self._creating = 0
        self._closed = False
        self._condition = asyncio.Condition()

        self._created = 0
        self._reused = 0
        self._waits = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    def _total(self) -> int:
        return len(self._idle) + len(self._in_use) + self._creating

    def stats(self) -> PoolStats:
        return PoolStats(
            capacity=self.capacity,
            idle=len(self._idle),
            in_use=len(self._in_use),
            created=self._created,
            reused=self._reused,
            waits=self._waits,
            closed=self._closed,
        )

    async def acquire(self, timeout: Optional[float] = None) -> DatabaseConnection:
        """Borrow a connection, creating one lazily while under capacity."""
        if timeout is None:
            timeout = self.acquire_timeout
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        waited = False

        async with self._condition:
            while True:
                if self._closed:
                    raise PoolClosed("Connection pool has been shut down")

                while self._idle:
                    connection = self._idle.popleft()
                    if not connection.is_alive:
                        logger.info("pool.discard_dead", connection_id=connection.connection_id)
                        continue
                    self._in_use[connection.connection_id] = connection
                    self._reused += 1
                    logger.debug("pool.acquire.reuse", connection_id=connection.connection_id)
                    return connection

                if self._total() < self.capacity:
                    self._creating += 1
                    break

                if not waited:
                    waited = True
                    self._waits += 1
                    logger.info("pool.acquire.wait", capacity=self.capacity, in_use=len(self._in_use))

                interval = self.retry_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        logger.warning("pool.acquire.timeout", timeout=timeout)
                        raise AcquireTimeout(
                            f"No connection available within {timeout} seconds",
                            timeout=timeout,
                        )
                    interval = min(interval, remaining)
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass

        return await self._create_reserved()

    async def _create_reserved(self) -> DatabaseConnection:
        # Slot bookkeeping happens before any await so a cancelled caller cannot leak its reservation.
        connection: Optional[DatabaseConnection] = None
        try:
            connection = await self.provider.create()
        except ProxyError:
            raise
        except Exception as exc:
            raise ProviderFailure(f"Could not create connection: {exc}") from exc
        finally:
            if connection is None:
                self._creating -= 1
                logger.warning("pool.acquire.create_failed", capacity=self.capacity)
                await self._notify()

        self._creating -= 1
        if self._closed:
            await connection.close()
            raise PoolClosed("Connection pool was shut down while connecting")
        self._in_use[connection.connection_id] = connection
        self._created += 1
        logger.debug("pool.acquire.create", connection_id=connection.connection_id, created=self._created)
        return connection

    async def _notify(self) -> None:
        # waiters also re-check every retry_interval, so a skipped wakeup only delays them
        async with self._condition:
            self._condition.notify()

    async def release(self, connection: DatabaseConnection) -> None:
        """Return a borrowed connection so the next waiter can use it."""
        if self._revoked.pop(connection.connection_id, None) is not None:
            logger.debug("pool.release.after_shutdown", connection_id=connection.connection_id)
            return
        if self._in_use.get(connection.connection_id) is not connection:
            raise InvalidState(f"Connection {connection.connection_id} is not in use by this pool")
        del self._in_use[connection.connection_id]
        if connection.is_alive:
            self._idle.append(connection)
            logger.debug("pool.release", connection_id=connection.connection_id)
        else:
            logger.info("pool.release.dropped_dead", connection_id=connection.connection_id)
        await self._notify()

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None) -> AsyncIterator[DatabaseConnection]:
        conn = await self.acquire(timeout)
        try:
            yield conn
        finally:
            await self.release(conn)

    async def shutdown(self) -> None:
        """Close every tracked connection; later acquires fail with ``PoolClosed``."""
        async with self._condition:
            if self._closed:
                return
            self._closed = True
            idle = list(self._idle)
            outstanding = list(self._in_use.values())
            self._idle.clear()
            self._revoked.update(self._in_use)
            self._in_use.clear()
            self._condition.notify_all()

        for connection in idle + outstanding:
            await connection.close()
        await self.provider.dispose()
        logger.info("pool.shutdown", closed_idle=len(idle), closed_outstanding=len(outstanding))


__all__ = ["ConnectionPool", "PoolStats"]
