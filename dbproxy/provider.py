"""Connection providers: the expensive layer the proxy shields callers from.

Two backends are available:

- ``SimulatedProvider`` keeps records in memory and sleeps to model latency.
- ``SqlAlchemyProvider`` hands out real connections from a SQLAlchemy engine.
  The engine uses ``NullPool`` so that ``ConnectionPool`` is the only pool.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import structlog
from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from dbproxy.config import ProviderSettings
from dbproxy.exceptions import InvalidState, ProviderFailure


logger = structlog.get_logger(__name__)


class DatabaseConnection(ABC):
    """A single expensive connection, lent to one caller at a time by the pool."""

    _ids = itertools.count(1)

    def __init__(self) -> None:
        self.connection_id = next(self._ids)
        self._alive = True

    @property
    def is_alive(self) -> bool:
        return self._alive

    def _ensure_alive(self) -> None:
        if not self._alive:
            raise InvalidState(f"Connection {self.connection_id} is closed")

    @abstractmethod
    async def read(self, key: str) -> Any: ...

    @abstractmethod
    async def write(self, key: str, value: Any) -> None: ...

    @abstractmethod
    async def query(self, sql: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def execute_update(self, sql: str) -> int: ...

    @abstractmethod
    async def get_user_data(self, user_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_product_details(self, product_id: str) -> Dict[str, Any]: ...

    async def close(self) -> None:
        if not self._alive:
            return
        self._alive = False
        logger.info("connection.closed", connection_id=self.connection_id)

    def __repr__(self) -> str:
        state = "alive" if self._alive else "closed"
        return f"<{type(self).__name__} id={self.connection_id} {state}>"


class ConnectionProvider(ABC):
    """Produces connections on demand; no pooling or caching happens here."""

    def __init__(self) -> None:
        self.created = 0

    async def create(self) -> DatabaseConnection:
        connection = await self._connect()
        self.created += 1
        logger.info("provider.connection_created", connection_id=connection.connection_id, created=self.created)
        return connection

    @abstractmethod
    async def _connect(self) -> DatabaseConnection: ...

    async def dispose(self) -> None:
        """Release provider-level resources once every connection is closed."""


class SimulatedDatabase:
    """In-memory backing store shared by the connections of one provider."""

    def __init__(self) -> None:
        self.records: Dict[str, Any] = {}
        self.reads = 0
        self.writes = 0
        self.statements: List[str] = []

    @staticmethod
    def default_user(user_id: str) -> Dict[str, Any]:
        return {
            "id": user_id,
            "name": f"User {user_id}",
            "email": f"user{user_id}@example.com",
            "role": "customer",
        }

    @staticmethod
    def default_product(product_id: str) -> Dict[str, Any]:
        return {
            "id": product_id,
            "name": f"Product {product_id}",
            "price": 99.99,
            "stock": 50,
        }


class SimulatedConnection(DatabaseConnection):
    def __init__(self, database: SimulatedDatabase, settings: ProviderSettings) -> None:
        super().__init__()
        self._database = database
        self._settings = settings

    async def read(self, key: str) -> Any:
        self._ensure_alive()
        logger.debug("connection.read", connection_id=self.connection_id, key=key)
        await asyncio.sleep(self._settings.query_latency)
        self._database.reads += 1
        return self._database.records.get(key)

    async def write(self, key: str, value: Any) -> None:
        self._ensure_alive()
        logger.debug("connection.write", connection_id=self.connection_id, key=key)
        await asyncio.sleep(self._settings.update_latency)
        self._database.writes += 1
        self._database.records[key] = value

    async def query(self, sql: str) -> List[Dict[str, Any]]:
        self._ensure_alive()
        logger.debug("connection.query", connection_id=self.connection_id, sql=sql)
        await asyncio.sleep(self._settings.query_latency)
        self._database.reads += 1
        self._database.statements.append(sql)
        return [{"result": f"data from {sql}"}]

    async def execute_update(self, sql: str) -> int:
        self._ensure_alive()
        logger.debug("connection.execute_update", connection_id=self.connection_id, sql=sql)
        await asyncio.sleep(self._settings.update_latency)
        self._database.writes += 1
        self._database.statements.append(sql)
        return 1

    async def get_user_data(self, user_id: str) -> Dict[str, Any]:
        self._ensure_alive()
        await asyncio.sleep(self._settings.user_latency)
        self._database.reads += 1
        record = self._database.records.get(f"user:{user_id}")
        return dict(record) if record is not None else SimulatedDatabase.default_user(user_id)

    async def get_product_details(self, product_id: str) -> Dict[str, Any]:
        self._ensure_alive()
        await asyncio.sleep(self._settings.product_latency)
        self._database.reads += 1
        record = self._database.records.get(f"product:{product_id}")
        return dict(record) if record is not None else SimulatedDatabase.default_product(product_id)


class SimulatedProvider(ConnectionProvider):
    """Provider whose connections share one in-memory database."""

    def __init__(
        self,
        settings: Optional[ProviderSettings] = None,
        database: Optional[SimulatedDatabase] = None,
    ) -> None:
        super().__init__()
        self.settings = settings or ProviderSettings()
        self.database = database or SimulatedDatabase()
        self._failures_pending = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` connection attempts fail as if the server were unreachable."""
        self._failures_pending += count

    async def _connect(self) -> DatabaseConnection:
        await asyncio.sleep(self.settings.connect_latency)
        if self._failures_pending:
            self._failures_pending -= 1
            raise ProviderFailure("Simulated database is unreachable")
        return SimulatedConnection(self.database, self.settings)


metadata = MetaData()

kv_entries = Table(
    "kv_entries",
    metadata,
    Column("key", String, primary_key=True),
    Column("value", Text, nullable=False),
)

users = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("email", String),
    Column("role", String),
)

products = Table(
    "products",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("price", Float),
    Column("stock", Integer),
)


class SqlAlchemyConnection(DatabaseConnection):
    """Wraps one SQLAlchemy ``Connection``; blocking calls run in a worker thread."""

    def __init__(self, connection: Connection) -> None:
        super().__init__()
        self._connection = connection

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            yield self._connection
            self._connection.commit()
        except Exception:
            self._connection.rollback()
            raise

    @contextmanager
    def _snapshot(self) -> Iterator[Connection]:
        try:
            yield self._connection
        finally:
            self._connection.rollback()

    def _read_sync(self, key: str) -> Any:
        with self._snapshot() as conn:
            row = conn.execute(select(kv_entries.c.value).where(kv_entries.c.key == key)).first()
        return json.loads(row.value) if row is not None else None

    def _write_sync(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        with self._transaction() as conn:
            updated = conn.execute(kv_entries.update().where(kv_entries.c.key == key).values(value=payload))
            if updated.rowcount == 0:
                conn.execute(kv_entries.insert().values(key=key, value=payload))

    def _query_sync(self, sql: str) -> List[Dict[str, Any]]:
        with self._snapshot() as conn:
            return [dict(row._mapping) for row in conn.execute(text(sql))]

    def _execute_update_sync(self, sql: str) -> int:
        with self._transaction() as conn:
            return conn.execute(text(sql)).rowcount

    def _fetch_row_sync(self, table: Table, row_id: str) -> Dict[str, Any]:
        with self._snapshot() as conn:
            row = conn.execute(select(table).where(table.c.id == row_id)).first()
        if row is None:
            raise KeyError(row_id)
        return dict(row._mapping)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        # A worker thread cannot be interrupted, so a cancelled caller retires the connection.
        self._ensure_alive()
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            self._alive = False
            worker.add_done_callback(self._close_after_worker)
            logger.warning("connection.retired_busy", connection_id=self.connection_id)
            raise

    def _close_after_worker(self, worker: asyncio.Future) -> None:
        if not worker.cancelled() and worker.exception() is not None:
            logger.info("connection.worker_failed", connection_id=self.connection_id, error=repr(worker.exception()))
        asyncio.get_running_loop().run_in_executor(None, self._connection.close)
        logger.info("connection.closed", connection_id=self.connection_id)

    async def read(self, key: str) -> Any:
        return await self._run(self._read_sync, key)

    async def write(self, key: str, value: Any) -> None:
        await self._run(self._write_sync, key, value)

    async def query(self, sql: str) -> List[Dict[str, Any]]:
        return await self._run(self._query_sync, sql)

    async def execute_update(self, sql: str) -> int:
        return await self._run(self._execute_update_sync, sql)

    async def get_user_data(self, user_id: str) -> Dict[str, Any]:
        return await self._run(self._fetch_row_sync, users, user_id)

    async def get_product_details(self, product_id: str) -> Dict[str, Any]:
        return await self._run(self._fetch_row_sync, products, product_id)

    async def close(self) -> None:
        if not self.is_alive:
            return
        await asyncio.to_thread(self._connection.close)
        await super().close()


class SqlAlchemyProvider(ConnectionProvider):
    """Provider backed by a real database reachable through SQLAlchemy."""

    def __init__(self, settings: Optional[ProviderSettings] = None, engine: Optional[Engine] = None) -> None:
        super().__init__()
        self.settings = settings or ProviderSettings(backend="sqlalchemy")
        self.engine = engine or create_engine(
            self.settings.database_url,
            poolclass=NullPool,
            echo=self.settings.echo,
            connect_args=_connect_args(self.settings.database_url),
        )
        self._schema_ready = False

    def _connect_sync(self) -> Connection:
        if not self._schema_ready:
            database = self.engine.url.database
            if self.engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            metadata.create_all(bind=self.engine)
            self._schema_ready = True
        return self.engine.connect()

    async def _connect(self) -> DatabaseConnection:
        try:
            connection = await asyncio.to_thread(self._connect_sync)
        except SQLAlchemyError as exc:
            raise ProviderFailure(f"Could not connect to {self.engine.url.render_as_string()}: {exc}") from exc
        return SqlAlchemyConnection(connection)

    def _seed_sync(self, user_rows: List[Dict[str, Any]], product_rows: List[Dict[str, Any]]) -> None:
        self._connect_sync().close()
        with self.engine.begin() as conn:
            for table, rows in ((users, user_rows), (products, product_rows)):
                for row in rows:
                    conn.execute(table.delete().where(table.c.id == row["id"]))
                    conn.execute(table.insert().values(**row))

    async def seed(
        self,
        *,
        user_rows: Iterable[Dict[str, Any]] = (),
        product_rows: Iterable[Dict[str, Any]] = (),
    ) -> None:
        """Replace the given user and product rows, creating the schema if needed."""
        await asyncio.to_thread(self._seed_sync, list(user_rows), list(product_rows))

    async def dispose(self) -> None:
        await asyncio.to_thread(self.engine.dispose)


def _connect_args(database_url: str) -> Dict[str, Any]:
    # sqlite connections are handed between worker threads by asyncio.to_thread
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def create_provider(settings: ProviderSettings) -> ConnectionProvider:
    if settings.backend == "sqlalchemy":
        return SqlAlchemyProvider(settings)
    return SimulatedProvider(settings)


__all__ = [
    "ConnectionProvider",
    "DatabaseConnection",
    "SimulatedConnection",
    "SimulatedDatabase",
    "SimulatedProvider",
    "SqlAlchemyConnection",
    "SqlAlchemyProvider",
    "create_provider",
]
