"""
Fallback Executor

Runs a primary operation (normally a database query) under a timeout and a
circuit breaker, caching successful results in the tiered cache. When the
primary is skipped, fails or times out, the last cached value is returned,
and when nothing is cached the caller's default is. It never raises for
dependency failures: the chatbot keeps answering with stale or default data.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, TypeVar

from chatbot_resilience.core.cache.models import CacheLayer, validate_key, validate_ttl
from chatbot_resilience.core.cache.tiered_cache import TieredCache
from chatbot_resilience.core.infrastructure.circuit_breaker import CircuitBreaker, CircuitState
from chatbot_resilience.core.shared.logger import LogCategory, get_category_logger

logger = get_category_logger(__name__, LogCategory.DATABASE)

T = TypeVar("T")


class FallbackSource(str, Enum):
    """Where the data in a ``FallbackResult`` came from."""

    PRIMARY = "primary"
    MEMORY = "memory"
    REDIS = "redis"
    FILE = "file"
    DEFAULT = "default"

    @classmethod
    def from_layer(cls, layer: CacheLayer) -> "FallbackSource":
        return cls(layer.value)


@dataclass
class FallbackResult(Generic[T]):
    """Outcome of ``execute_with_fallback``."""

    success: bool
    data: T | None
    source: FallbackSource
    fallback_used: bool
    error: str | None = None

    @property
    def is_stale(self) -> bool:
        """True when the data did not come from the primary operation."""
        return self.source != FallbackSource.PRIMARY

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "source": self.source.value,
            "fallback_used": self.fallback_used,
            "error": self.error,
        }


class FallbackExecutor:
    """
    Composes ``TieredCache`` and ``CircuitBreaker`` into one
    execute-with-fallback contract used by every data access call.
    """

    DEFAULT_TIMEOUT_SECONDS: float = 5.0
    DEFAULT_CACHE_TTL_SECONDS: int = 3600

    def __init__(
        self,
        cache: TieredCache,
        circuit_breaker: CircuitBreaker | None = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
    ):
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self.cache = cache
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="database")
        self.default_timeout = default_timeout
        self.cache_ttl = validate_ttl(cache_ttl)
        self._stats: dict[str, Any] = {
            "executions": 0,
            "primary_successes": 0,
            "primary_failures": 0,
            "primary_timeouts": 0,
            "circuit_skips": 0,
            "fallback_sources": {source.value: 0 for source in FallbackSource if source != FallbackSource.PRIMARY},
        }

    @property
    def circuit_state(self) -> CircuitState:
        return self.circuit_breaker.state

    async def execute_with_fallback(
        self,
        primary: Callable[[], Awaitable[T]],
        cache_key: str,
        default: T | None = None,
        timeout: float | None = None,
        cache_ttl: float | None = None,
        operation: str = "primary",
    ) -> FallbackResult[T]:
        """
        Execute the primary operation, falling back to cache or default.

        Args:
            primary: Zero-argument coroutine function hitting the system of record
            cache_key: Key under which successful results are cached
            default: Value returned when neither primary nor cache can answer
            timeout: Seconds allowed for the primary (executor default when None)
            cache_ttl: TTL for caching a successful result (executor default when None)
            operation: Label used in logs

        Returns:
            FallbackResult whose ``source`` tells where the data came from

        Raises:
            CacheKeyError: If ``cache_key`` is not a non-empty string
            ValueError: If ``timeout`` or ``cache_ttl`` is not positive
            TypeError: If ``primary`` is not callable
        """
        validate_key(cache_key)
        if not callable(primary):
            raise TypeError("primary must be a callable returning an awaitable")
        timeout = self.default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        ttl = self.cache_ttl if cache_ttl is None else validate_ttl(cache_ttl)

        self._stats["executions"] += 1
        error: str | None = None

        if await self.circuit_breaker.allow_request():
            try:
                result = await asyncio.wait_for(primary(), timeout=timeout)
            except asyncio.CancelledError:
                self.circuit_breaker.release_trial()
                raise
            except TimeoutError:
                self._stats["primary_timeouts"] += 1
                error = f"{operation} timed out after {timeout}s"
                await self.circuit_breaker.record_failure()
                logger.warning(
                    "Primary operation timed out",
                    operation=operation,
                    cache_key=cache_key,
                    timeout=timeout,
                    circuit_state=self.circuit_state.value,
                )
            except Exception as e:
                self._stats["primary_failures"] += 1
                error = f"{type(e).__name__}: {e}"
                await self.circuit_breaker.record_failure(e)
                logger.warning(
                    "Primary operation failed",
                    operation=operation,
                    cache_key=cache_key,
                    error=error,
                    circuit_state=self.circuit_state.value,
                )
            else:
                await self.circuit_breaker.record_success()
                self._stats["primary_successes"] += 1
                await self._store(cache_key, result, ttl, operation)
                return FallbackResult(
                    success=True,
                    data=result,
                    source=FallbackSource.PRIMARY,
                    fallback_used=False,
                )
        else:
            self._stats["circuit_skips"] += 1
            error = f"circuit '{self.circuit_breaker.name}' is open"
            logger.info(
                "Circuit open, skipping primary operation",
                operation=operation,
                cache_key=cache_key,
                retry_after=round(self.circuit_breaker.retry_after, 3),
            )

        return await self._fallback(cache_key, default, operation, error)

    async def _store(self, cache_key: str, result: Any, ttl: float, operation: str) -> None:
        try:
            await self.cache.set(cache_key, result, ttl)
        except TypeError as e:
            # The primary answered; an unserializable result only costs us the cache
            logger.error(
                "Primary result could not be cached",
                operation=operation,
                cache_key=cache_key,
                error=str(e),
            )

    async def _fallback(
        self,
        cache_key: str,
        default: Any,
        operation: str,
        error: str | None,
    ) -> FallbackResult[Any]:
        try:
            cached = await self.cache.lookup(cache_key)
        except Exception as e:
            self._stats["fallback_sources"][FallbackSource.DEFAULT.value] += 1
            logger.exception("Fallback cache lookup failed", operation=operation, cache_key=cache_key)
            return FallbackResult(
                success=True,
                data=default,
                source=FallbackSource.DEFAULT,
                fallback_used=True,
                error=f"{error}; fallback failed: {e}" if error else str(e),
            )

        if cached.hit and cached.layer is not None:
            source = FallbackSource.from_layer(cached.layer)
            self._stats["fallback_sources"][source.value] += 1
            logger.info("Serving cached fallback data", operation=operation, cache_key=cache_key, source=source.value)
            return FallbackResult(success=True, data=cached.value, source=source, fallback_used=True, error=error)

        self._stats["fallback_sources"][FallbackSource.DEFAULT.value] += 1
        logger.warning("No fallback data available, using default", operation=operation, cache_key=cache_key)
        return FallbackResult(
            success=True,
            data=default,
            source=FallbackSource.DEFAULT,
            fallback_used=True,
            error=error,
        )

    def reset_circuit_breaker(self) -> None:
        self.circuit_breaker.reset()

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "fallback_sources": dict(self._stats["fallback_sources"]),
            "circuit_breaker": self.circuit_breaker.get_status(),
            "cache": self.cache.get_stats(),
        }
