# ============================================================================
# Tests for FallbackExecutor
# ============================================================================
"""Unit tests for execute-with-fallback over the tiered cache and breaker."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatbot_resilience.core.cache.models import CacheKeyError, DurableRecord
from chatbot_resilience.core.cache.tiered_cache import TieredCache
from chatbot_resilience.core.infrastructure.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from chatbot_resilience.core.infrastructure.fallback_executor import FallbackExecutor, FallbackSource


class CountingPrimary:
    """Primary operation that counts calls and fails on demand."""

    def __init__(self, result=None):
        self.result = result
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=3, cooldown_seconds=60), clock=clock)


@pytest.fixture
def executor(tiered_cache, breaker) -> FallbackExecutor:
    return FallbackExecutor(tiered_cache, circuit_breaker=breaker, default_timeout=1.0, cache_ttl=3600)


class TestFallbackExecutorPrimary:
    """Tests for the healthy path."""

    @pytest.mark.asyncio
    async def test_primary_success_is_returned_and_cached(self, executor, tiered_cache) -> None:
        """Should return primary data and store it in the cache."""
        primary = CountingPrimary({"id": "u1", "name": "Ana"})

        result = await executor.execute_with_fallback(primary, "user:5511")

        assert result.success
        assert result.source == FallbackSource.PRIMARY
        assert not result.fallback_used
        assert not result.is_stale
        assert result.data == {"id": "u1", "name": "Ana"}
        assert await tiered_cache.get("user:5511") == {"id": "u1", "name": "Ana"}

    @pytest.mark.asyncio
    async def test_unserializable_primary_result_is_still_returned(self, executor, tiered_cache) -> None:
        """Should return the primary data even when it cannot be cached."""
        value = object()

        result = await executor.execute_with_fallback(CountingPrimary(value), "opaque")

        assert result.data is value
        assert result.source == FallbackSource.PRIMARY
        assert await tiered_cache.get("opaque") is None


class TestFallbackExecutorDegraded:
    """Tests for failure, timeout and open-circuit paths."""

    @pytest.mark.asyncio
    async def test_failure_serves_cached_value(self, executor, tiered_cache) -> None:
        """Should fall back to the cache when the primary raises."""
        await tiered_cache.set("user:1", {"id": "u1"}, ttl_seconds=600)
        primary = CountingPrimary()
        primary.error = ConnectionError("db down")

        result = await executor.execute_with_fallback(primary, "user:1")

        assert result.success
        assert result.fallback_used
        assert result.source == FallbackSource.MEMORY
        assert result.data == {"id": "u1"}
        assert "ConnectionError" in result.error

    @pytest.mark.asyncio
    async def test_failure_without_cache_returns_default(self, executor) -> None:
        """Should return the caller's default when nothing is cached."""
        primary = CountingPrimary()
        primary.error = RuntimeError("boom")

        result = await executor.execute_with_fallback(primary, "user:404", default={"name": "Cliente"})

        assert result.source == FallbackSource.DEFAULT
        assert result.data == {"name": "Cliente"}
        assert result.fallback_used

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, executor, breaker) -> None:
        """Should give up on a slow primary and record a failure."""

        async def slow():
            await asyncio.sleep(5)
            return "late"

        result = await executor.execute_with_fallback(slow, "slow:key", default="fallback", timeout=0.01)

        assert result.data == "fallback"
        assert result.source == FallbackSource.DEFAULT
        assert "timed out" in result.error
        assert breaker.failure_count == 1
        assert executor.get_stats()["primary_timeouts"] == 1

    @pytest.mark.asyncio
    async def test_sources_name_the_layer_that_answered(self, executor, tiered_cache, file_backend, clock) -> None:
        """Should report redis or file when the value came from those layers."""
        await tiered_cache.set("from:redis", "r", ttl_seconds=600)
        tiered_cache.memory.clear()
        await file_backend.set(DurableRecord(key="from:file", data="f", timestamp=clock(), expires_at=clock() + 600))
        failing = CountingPrimary()
        failing.error = RuntimeError("down")

        redis_result = await executor.execute_with_fallback(failing, "from:redis")
        file_result = await executor.execute_with_fallback(failing, "from:file")

        assert redis_result.source == FallbackSource.REDIS
        assert file_result.source == FallbackSource.FILE
        assert file_result.data == "f"

    @pytest.mark.asyncio
    async def test_cache_lookup_error_returns_default(self, breaker) -> None:
        """Should never raise even when the cache itself blows up."""
        cache = AsyncMock(spec=TieredCache)
        cache.lookup.side_effect = RuntimeError("cache broken")
        executor = FallbackExecutor(cache, circuit_breaker=breaker)
        primary = CountingPrimary()
        primary.error = RuntimeError("down")

        result = await executor.execute_with_fallback(primary, "k", default=0)

        assert result.success
        assert result.source == FallbackSource.DEFAULT
        assert result.data == 0
        assert "cache broken" in result.error


class TestFallbackExecutorCircuit:
    """The breaker opens after three failures and retries after the cooldown."""

    @pytest.mark.asyncio
    async def test_failure_threshold_and_cooldown(self, executor, tiered_cache, clock) -> None:
        """Should skip the primary while open and close after a successful trial call."""
        await tiered_cache.set("user:1", {"id": "cached"}, ttl_seconds=3600)
        primary = CountingPrimary({"id": "fresh"})
        primary.error = ConnectionError("db down")

        for _ in range(3):
            result = await executor.execute_with_fallback(primary, "user:1")
            assert result.data == {"id": "cached"}
        assert primary.calls == 3
        assert executor.circuit_state == CircuitState.OPEN

        # Fourth call inside the cooldown never reaches the primary
        result = await executor.execute_with_fallback(primary, "user:1")
        assert primary.calls == 3
        assert result.data == {"id": "cached"}
        assert "open" in result.error

        clock.advance(60)
        primary.error = None
        result = await executor.execute_with_fallback(primary, "user:1")

        assert primary.calls == 4
        assert result.source == FallbackSource.PRIMARY
        assert result.data == {"id": "fresh"}
        assert executor.circuit_state == CircuitState.CLOSED
        assert executor.get_stats()["circuit_skips"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_call_after_cooldown_keeps_circuit_usable(self, executor, clock) -> None:
        """Should let the next call reach the primary after a cancelled trial call."""
        failing = CountingPrimary()
        failing.error = ConnectionError("db down")
        for _ in range(3):
            await executor.execute_with_fallback(failing, "user:1")
        assert executor.circuit_state == CircuitState.OPEN
        clock.advance(60)

        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(3600)

        task = asyncio.create_task(executor.execute_with_fallback(hang, "user:1", timeout=3600))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        primary = CountingPrimary({"id": "fresh"})
        result = await executor.execute_with_fallback(primary, "user:1")

        assert primary.calls == 1
        assert result.source == FallbackSource.PRIMARY
        assert executor.circuit_state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_circuit_breaker(self, executor) -> None:
        """Should close the circuit on demand."""
        primary = CountingPrimary()
        primary.error = RuntimeError("down")
        for _ in range(3):
            await executor.execute_with_fallback(primary, "k")

        executor.reset_circuit_breaker()

        assert executor.circuit_state == CircuitState.CLOSED


class TestFallbackExecutorValidation:
    """Caller misuse raises before any work is done."""

    @pytest.mark.asyncio
    async def test_invalid_key(self, executor) -> None:
        """Should raise for an empty cache key."""
        with pytest.raises(CacheKeyError):
            await executor.execute_with_fallback(CountingPrimary(), "")

    @pytest.mark.asyncio
    async def test_non_callable_primary(self, executor) -> None:
        """Should raise when primary is not callable."""
        with pytest.raises(TypeError):
            await executor.execute_with_fallback("not callable", "k")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [{"timeout": 0}, {"timeout": -1}, {"cache_ttl": 0}])
    async def test_non_positive_timeout_or_ttl(self, executor, kwargs) -> None:
        """Should raise for non-positive timeouts and TTLs."""
        primary = CountingPrimary("v")

        with pytest.raises(ValueError):
            await executor.execute_with_fallback(primary, "k", **kwargs)
        assert primary.calls == 0

    def test_constructor_validation(self, tiered_cache) -> None:
        """Should reject non-positive defaults."""
        with pytest.raises(ValueError):
            FallbackExecutor(tiered_cache, default_timeout=0)
        with pytest.raises(ValueError):
            FallbackExecutor(tiered_cache, cache_ttl=-1)

    @pytest.mark.asyncio
    async def test_stats_and_result_dict(self, executor) -> None:
        """Should count executions and serialize results."""
        result = await executor.execute_with_fallback(CountingPrimary("v"), "k")

        stats = executor.get_stats()

        assert stats["executions"] == 1
        assert stats["primary_successes"] == 1
        assert stats["circuit_breaker"]["state"] == "closed"
        assert result.to_dict() == {
            "success": True,
            "data": "v",
            "source": "primary",
            "fallback_used": False,
            "error": None,
        }
