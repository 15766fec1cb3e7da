"""Caching database proxy package exports."""

from dbproxy.cache import MISS, CacheStore
from dbproxy.config import get_settings
from dbproxy.exceptions import AcquireTimeout, InvalidState, PoolClosed, ProviderFailure, ProxyError
from dbproxy.invalidation import InvalidationRules
from dbproxy.pool import ConnectionPool
from dbproxy.provider import SimulatedProvider, SqlAlchemyProvider
from dbproxy.proxy import DatabaseProxy

__all__ = [
    "get_settings",
    "MISS",
    "CacheStore",
    "ConnectionPool",
    "DatabaseProxy",
    "InvalidationRules",
    "SimulatedProvider",
    "SqlAlchemyProvider",
    "ProxyError",
    "PoolClosed",
    "AcquireTimeout",
    "InvalidState",
    "ProviderFailure",
]
