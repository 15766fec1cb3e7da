"""Tests for the simulated and SQLAlchemy connection providers."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest
from sqlalchemy import event

from dbproxy.cache import CacheStore
from dbproxy.config import ProviderSettings
from dbproxy.exceptions import InvalidState, ProviderFailure
from dbproxy.pool import ConnectionPool
from dbproxy.provider import (
    SimulatedProvider,
    SqlAlchemyProvider,
    create_provider,
)
from dbproxy.proxy import DatabaseProxy


def sqlite_settings(path: Path) -> ProviderSettings:
    return ProviderSettings(backend="sqlalchemy", database_url=f"sqlite:///{path}")


class TestSimulatedProvider:
    @pytest.mark.asyncio
    async def test_default_records(self, provider: SimulatedProvider) -> None:
        connection = await provider.create()

        user = await connection.get_user_data("42")
        product = await connection.get_product_details("9")

        assert user == {"id": "42", "name": "User 42", "email": "user42@example.com", "role": "customer"}
        assert product == {"id": "9", "name": "Product 9", "price": 99.99, "stock": 50}

    @pytest.mark.asyncio
    async def test_connections_share_backing_store(self, provider: SimulatedProvider) -> None:
        writer = await provider.create()
        reader = await provider.create()

        await writer.write("k", "v")

        assert await reader.read("k") == "v"
        assert provider.created == 2

    @pytest.mark.asyncio
    async def test_query_and_update_results(self, provider: SimulatedProvider) -> None:
        connection = await provider.create()

        assert await connection.query("SELECT 1") == [{"result": "data from SELECT 1"}]
        assert await connection.execute_update("UPDATE users SET role = 'x'") == 1
        assert provider.database.statements == ["SELECT 1", "UPDATE users SET role = 'x'"]

    @pytest.mark.asyncio
    async def test_closed_connection_rejects_operations(self, provider: SimulatedProvider) -> None:
        connection = await provider.create()
        await connection.close()

        assert not connection.is_alive
        with pytest.raises(InvalidState):
            await connection.read("k")

    @pytest.mark.asyncio
    async def test_fail_next_simulates_unreachable_database(self, provider: SimulatedProvider) -> None:
        provider.fail_next()

        with pytest.raises(ProviderFailure):
            await provider.create()
        assert (await provider.create()).is_alive


def test_create_provider_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_provider(ProviderSettings()), SimulatedProvider)
    assert isinstance(create_provider(sqlite_settings(tmp_path / "db.sqlite")), SqlAlchemyProvider)


class TestSqlAlchemyProvider:
    @pytest.mark.asyncio
    async def test_key_value_write_is_visible_to_other_connection(self, tmp_path: Path) -> None:
        provider = SqlAlchemyProvider(sqlite_settings(tmp_path / "kv.sqlite"))
        writer = await provider.create()
        reader = await provider.create()

        assert await reader.read("config:1") is None
        await writer.write("config:1", {"enabled": True})
        await writer.write("config:1", {"enabled": False})

        assert await reader.read("config:1") == {"enabled": False}
        await writer.close()
        await reader.close()
        await provider.dispose()

    @pytest.mark.asyncio
    async def test_rows_and_statements(self, tmp_path: Path) -> None:
        provider = SqlAlchemyProvider(sqlite_settings(tmp_path / "nested" / "rows.sqlite"))
        await provider.seed(user_rows=[{"id": "u1", "name": "Ada", "email": "ada@example.com", "role": "admin"}])
        connection = await provider.create()

        affected = await connection.execute_update("UPDATE users SET name = 'Grace' WHERE id = 'u1'")
        user = await connection.get_user_data("u1")
        rows = await connection.query("SELECT id, name FROM users")

        assert affected == 1
        assert user == {"id": "u1", "name": "Grace", "email": "ada@example.com", "role": "admin"}
        assert rows == [{"id": "u1", "name": "Grace"}]
        with pytest.raises(KeyError):
            await connection.get_product_details("missing")
        await connection.close()
        await provider.dispose()

    @pytest.mark.asyncio
    async def test_unreachable_database_is_provider_failure(self, tmp_path: Path) -> None:
        provider = SqlAlchemyProvider(sqlite_settings(tmp_path))

        with pytest.raises(ProviderFailure):
            await provider.create()

    @pytest.mark.asyncio
    async def test_pool_wraps_filesystem_errors(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        pool = ConnectionPool(SqlAlchemyProvider(sqlite_settings(blocker / "db.sqlite")), capacity=1)

        with pytest.raises(ProviderFailure) as excinfo:
            await pool.acquire()

        assert isinstance(excinfo.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_proxy_over_real_database_refreshes_after_update(self, tmp_path: Path) -> None:
        provider = SqlAlchemyProvider(sqlite_settings(tmp_path / "proxy.sqlite"))
        await provider.seed(
            user_rows=[{"id": "u1", "name": "Ada", "email": None, "role": "customer"}],
            product_rows=[{"id": "p1", "name": "Lamp", "price": 10.0, "stock": 3}],
        )
        proxy = DatabaseProxy(ConnectionPool(provider, capacity=2), CacheStore())

        assert (await proxy.get_user_data("u1"))["name"] == "Ada"
        await proxy.get_product_details("p1")
        await proxy.execute_update("UPDATE users SET name = 'Grace' WHERE id = 'u1'")

        assert (await proxy.get_user_data("u1"))["name"] == "Grace"
        assert "product:p1" in proxy.cache
        await proxy.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_call_retires_connection_until_worker_finishes(self, tmp_path: Path) -> None:
        provider = SqlAlchemyProvider(sqlite_settings(tmp_path / "slow.sqlite"))
        started = threading.Event()
        unblock = threading.Event()

        def slow(value):
            started.set()
            unblock.wait(5)
            return value

        @event.listens_for(provider.engine, "connect")
        def register_slow(dbapi_connection, _record) -> None:
            dbapi_connection.create_function("slow", 1, slow)

        pool = ConnectionPool(provider, capacity=1, retry_interval=0.01)
        proxy = DatabaseProxy(pool, CacheStore())
        pending = asyncio.create_task(proxy.query("SELECT slow(1) AS v"))
        while not started.is_set():
            await asyncio.sleep(0.01)
        busy = pool.stats().in_use

        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending
        fresh = await pool.acquire(timeout=1)

        assert busy == 1
        assert provider.created == 2
        assert fresh.is_alive
        assert await fresh.query("SELECT 2 AS v") == [{"v": 2}]
        unblock.set()
        await pool.release(fresh)
        await pool.shutdown()
