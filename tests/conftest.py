"""
Shared pytest fixtures for all tests.

This module provides a controllable clock, an in-memory Redis stand-in and
ready-made caches wired to both.
"""

import os
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from redis.asyncio import Redis

from chatbot_resilience.config.settings import reset_settings
from chatbot_resilience.core.cache.backends import FileCacheBackend, MemoryCacheBackend, RedisCacheBackend
from chatbot_resilience.core.cache.tiered_cache import TieredCache

# Ensure test environment
os.environ["ENVIRONMENT"] = "test"

START_TIME = 1_700_000_000.0


# ============================================================================
# CLOCK
# ============================================================================


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at a fixed instant until advanced."""
    return FakeClock()


# ============================================================================
# REDIS FIXTURES
# ============================================================================


class InMemoryRedis:
    """Minimal async Redis stand-in storing string values."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expirations: dict[str, int | None] = {}
        self.get_calls = 0
        self.set_calls = 0

    async def get(self, name: str):
        self.get_calls += 1
        return self.data.get(name)

    async def set(self, name: str, value: str, ex: int | None = None):
        self.set_calls += 1
        self.data[name] = value
        self.expirations[name] = ex
        return True

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                removed += 1
            self.expirations.pop(name, None)
        return removed

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    """Working in-memory Redis."""
    return InMemoryRedis()


@pytest.fixture
def failing_redis() -> Mock:
    """Redis mock whose every call raises a connection error."""
    redis = Mock(spec=Redis)
    error = ConnectionError("redis unreachable")
    redis.get = AsyncMock(side_effect=error)
    redis.set = AsyncMock(side_effect=error)
    redis.delete = AsyncMock(side_effect=error)
    redis.ping = AsyncMock(side_effect=error)
    return redis


# ============================================================================
# CACHE FIXTURES
# ============================================================================


@pytest.fixture
def fallback_dir(tmp_path: Path) -> Path:
    """Empty directory for the file layer."""
    return tmp_path / "fallback"


@pytest.fixture
def file_backend(fallback_dir: Path, clock: FakeClock) -> FileCacheBackend:
    return FileCacheBackend(fallback_dir, clock=clock)


@pytest.fixture
def redis_backend(fake_redis: InMemoryRedis, clock: FakeClock) -> RedisCacheBackend:
    return RedisCacheBackend(fake_redis, key_prefix="test", clock=clock)


@pytest_asyncio.fixture
async def tiered_cache(redis_backend: RedisCacheBackend, file_backend: FileCacheBackend, clock: FakeClock):
    """Tiered cache with all three layers."""
    cache = TieredCache(
        memory=MemoryCacheBackend(max_size=100),
        remote=redis_backend,
        durable=file_backend,
        promotion_ttl=60,
        layer_timeout=1.0,
        clock=clock,
    )
    yield cache
    await cache.close()


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Drop the cached settings so environment changes in a test apply."""
    reset_settings()
    yield
    reset_settings()
