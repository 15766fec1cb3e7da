"""Configuration management for the database proxy."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


ROOT = Path(__file__).resolve().parents[1]


class PoolSettings(BaseSettings):
    capacity: int = Field(default=3, ge=1)
    acquire_timeout: Optional[float] = None
    retry_interval: float = Field(default=0.1, gt=0)

    @field_validator("acquire_timeout")
    @classmethod
    def validate_acquire_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("acquire_timeout must be positive when set")
        return value


class CacheSettings(BaseSettings):
    ttl_seconds: Optional[float] = None
    scope_rules: Dict[str, str] = Field(
        default_factory=lambda: {"users": "user:", "products": "product:"}
    )

    @field_validator("scope_rules")
    @classmethod
    def ensure_scope_rules(cls, rules: Dict[str, str]) -> Dict[str, str]:
        for keyword, prefix in rules.items():
            if not keyword.strip() or not prefix.strip():
                raise ValueError("Invalidation rules must not contain empty keywords or prefixes")
        return rules


class ProviderSettings(BaseSettings):
    backend: Literal["simulated", "sqlalchemy"] = "simulated"
    database_url: str = Field(default=f"sqlite:///{ROOT / 'runs' / 'proxy.db'}")
    echo: bool = False
    connect_latency: float = 1.0
    query_latency: float = 0.2
    update_latency: float = 0.3
    user_latency: float = 0.25
    product_latency: float = 0.3

    @field_validator(
        "connect_latency",
        "query_latency",
        "update_latency",
        "user_latency",
        "product_latency",
    )
    @classmethod
    def validate_latency(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Simulated latencies must not be negative")
        return value


class Settings(BaseSettings):
    """Top-level configuration values for the proxy and its demo application."""

    pool: PoolSettings = Field(default_factory=PoolSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)

    json_logs: bool = True
    log_level: str = "INFO"

    model_config = {
        "env_prefix": "DBPROXY_",
        "env_file": ROOT / ".env",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
