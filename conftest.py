import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Ensure tests never sleep through the demo latencies configured in a developer's .env.
for _name in ("CONNECT", "QUERY", "UPDATE", "USER", "PRODUCT"):
    os.environ[f"DBPROXY_PROVIDER__{_name}_LATENCY"] = "0"

from dbproxy.cache import CacheStore  # noqa: E402
from dbproxy.config import ProviderSettings  # noqa: E402
from dbproxy.pool import ConnectionPool  # noqa: E402
from dbproxy.provider import SimulatedProvider  # noqa: E402
from dbproxy.proxy import DatabaseProxy  # noqa: E402


@pytest.fixture
def fast_provider_settings() -> ProviderSettings:
    return ProviderSettings(
        connect_latency=0,
        query_latency=0,
        update_latency=0,
        user_latency=0,
        product_latency=0,
    )


@pytest.fixture
def provider(fast_provider_settings: ProviderSettings) -> SimulatedProvider:
    return SimulatedProvider(fast_provider_settings)


@pytest.fixture
def pool(provider: SimulatedProvider) -> ConnectionPool:
    return ConnectionPool(provider, capacity=2, retry_interval=0.01)


@pytest.fixture
def proxy(pool: ConnectionPool) -> DatabaseProxy:
    return DatabaseProxy(pool, CacheStore())
