# ============================================================================
# SCOPE: GLOBAL
# Description: Cache en tres capas (memoria -> Redis -> archivos) usado por el
#              executor de fallback para usuarios, suscripciones y memoria.
# Tenant-Aware: No - las claves ya incluyen el identificador de usuario.
# ============================================================================
"""
Tiered Cache - memory, Redis and file layers checked in order.

Features:
- L1 memory always available; L2/L3 are optional and degrade silently
- Lower-layer hits are promoted into memory with a shorter TTL
- Writes go to every layer; L2/L3 failures are logged, never raised
- Remote and file operations are time-boxed
- Periodic cleanup of expired memory entries and fallback files

Usage:
    cache = TieredCache(remote=RedisCacheBackend(client), durable=FileCacheBackend(path))

    await cache.set("user:5511999999999", {"id": "u1"}, ttl_seconds=3600)
    value = await cache.get("user:5511999999999")
"""

import asyncio
from typing import Any, Awaitable, TypeVar

from chatbot_resilience.core.cache.backends import (
    DEFAULT_CLEANUP_BATCH_SIZE,
    FileCacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
)
from chatbot_resilience.core.cache.models import (
    MISS,
    CacheEntry,
    CacheLayer,
    CacheLookup,
    DurableRecord,
    to_jsonable,
    validate_key,
    validate_ttl,
)
from chatbot_resilience.core.shared.logger import LogCategory, get_category_logger
from chatbot_resilience.core.shared.timing import Clock, system_clock

logger = get_category_logger(__name__, LogCategory.CACHE)

T = TypeVar("T")


class TieredCache:
    """
    Generic key/value cache over three ordered layers.

    Only the memory layer is required. ``remote`` and ``durable`` may be
    ``None`` (not configured) and any error they raise at call time is
    swallowed after being logged.
    """

    # Default TTL for entries promoted from a lower layer into memory
    DEFAULT_PROMOTION_TTL_SECONDS: float = 300
    # Default timeout for a single Redis or file operation
    DEFAULT_LAYER_TIMEOUT_SECONDS: float = 1.5

    def __init__(
        self,
        memory: MemoryCacheBackend | None = None,
        remote: RedisCacheBackend | None = None,
        durable: FileCacheBackend | None = None,
        promotion_ttl: float = DEFAULT_PROMOTION_TTL_SECONDS,
        layer_timeout: float = DEFAULT_LAYER_TIMEOUT_SECONDS,
        clock: Clock = system_clock,
        cleanup_batch_size: int = DEFAULT_CLEANUP_BATCH_SIZE,
    ):
        """
        Initialize the tiered cache.

        Args:
            memory: L1 backend (a default-sized one is created when omitted)
            remote: L2 backend, or None to run without Redis
            durable: L3 backend, or None to run without the file fallback
            promotion_ttl: Maximum TTL given to entries promoted into memory
            layer_timeout: Seconds allowed for each L2/L3 operation
            clock: Time source, injectable for tests
            cleanup_batch_size: Entries processed between event loop yields
        """
        if promotion_ttl <= 0:
            raise ValueError("promotion_ttl must be positive")
        if layer_timeout <= 0:
            raise ValueError("layer_timeout must be positive")

        self.memory = memory or MemoryCacheBackend()
        self.remote = remote
        self.durable = durable
        self.promotion_ttl = promotion_ttl
        self.layer_timeout = layer_timeout
        self.cleanup_batch_size = cleanup_batch_size
        self._clock = clock
        self._background_tasks: set[asyncio.Task[Any]] = set()

        self._stats: dict[str, Any] = {
            "hits": {layer.value: 0 for layer in CacheLayer},
            "misses": 0,
            "sets": 0,
            "invalidations": 0,
            "promotions": 0,
            "layer_errors": {CacheLayer.REDIS.value: 0, CacheLayer.FILE.value: 0},
        }

        logger.info(
            "TieredCache initialized",
            redis_enabled=remote is not None,
            file_enabled=durable is not None,
        )

    @property
    def layers(self) -> list[CacheLayer]:
        """Configured layers, fastest first."""
        layers = [CacheLayer.MEMORY]
        if self.remote is not None:
            layers.append(CacheLayer.REDIS)
        if self.durable is not None:
            layers.append(CacheLayer.FILE)
        return layers

    async def get(self, key: str, default: Any = None) -> Any:
        """
        Get a value from the first layer that holds it.

        Args:
            key: Cache key
            default: Returned when every layer misses

        Returns:
            Cached value or ``default``
        """
        result = await self.lookup(key)
        return result.value if result.hit else default

    async def lookup(self, key: str) -> CacheLookup:
        """Like ``get`` but also reports which layer served the value."""
        validate_key(key)
        now = self._clock()

        entry = self.memory.get(key, now)
        if entry is not None:
            self._stats["hits"][CacheLayer.MEMORY.value] += 1
            logger.debug("Cache hit", key=key, layer=CacheLayer.MEMORY.value)
            return CacheLookup(hit=True, value=entry.value, layer=CacheLayer.MEMORY)

        if self.remote is not None:
            record = await self._guarded(CacheLayer.REDIS, "get", key, self.remote.get(key))
            if record is not None:
                self._promote(record, CacheLayer.REDIS)
                self._stats["hits"][CacheLayer.REDIS.value] += 1
                logger.debug("Cache hit", key=key, layer=CacheLayer.REDIS.value)
                return CacheLookup(hit=True, value=record.data, layer=CacheLayer.REDIS)

        if self.durable is not None:
            record = await self._guarded(CacheLayer.FILE, "get", key, self.durable.get(key))
            if record is not None:
                self._promote(record, CacheLayer.FILE)
                if self.remote is not None:
                    self._spawn(self._backfill_remote(record))
                self._stats["hits"][CacheLayer.FILE.value] += 1
                logger.debug("Cache hit", key=key, layer=CacheLayer.FILE.value)
                return CacheLookup(hit=True, value=record.data, layer=CacheLayer.FILE)

        self._stats["misses"] += 1
        logger.debug("Cache miss", key=key)
        return MISS

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """
        Store a value in every layer.

        The memory write always happens first and synchronously; Redis and
        file writes run concurrently and their failures are only logged.

        Raises:
            CacheKeyError: If the key is not a non-empty string
            ValueError: If the TTL is not positive
            TypeError: If the value cannot be serialized to JSON
        """
        validate_key(key)
        ttl = validate_ttl(ttl_seconds)
        data = to_jsonable(value)
        now = self._clock()

        self.memory.set(CacheEntry(key=key, value=data, created_at=now, expires_at=now + ttl))
        self._stats["sets"] += 1

        record = DurableRecord(key=key, data=data, timestamp=now, expires_at=now + ttl)
        writes: list[Awaitable[Any]] = []
        if self.remote is not None:
            writes.append(self._guarded(CacheLayer.REDIS, "set", key, self.remote.set(record)))
        if self.durable is not None:
            writes.append(self._guarded(CacheLayer.FILE, "set", key, self.durable.set(record)))
        if writes:
            await asyncio.gather(*writes)

    async def invalidate(self, key: str) -> None:
        """Remove a key from every layer (best-effort for Redis and file)."""
        validate_key(key)
        self.memory.delete(key)
        self._stats["invalidations"] += 1

        deletes: list[Awaitable[Any]] = []
        if self.remote is not None:
            deletes.append(self._guarded(CacheLayer.REDIS, "delete", key, self.remote.delete(key)))
        if self.durable is not None:
            deletes.append(self._guarded(CacheLayer.FILE, "delete", key, self.durable.delete(key)))
        if deletes:
            await asyncio.gather(*deletes)
        logger.debug("Cache key invalidated", key=key)

    async def cleanup(self) -> dict[str, int]:
        """Remove expired entries from memory and from the fallback directory."""
        now = self._clock()
        removed = {
            CacheLayer.MEMORY.value: await self.memory.cleanup_expired(now, self.cleanup_batch_size),
            CacheLayer.FILE.value: 0,
        }
        if self.durable is not None:
            # Not time-boxed: a large directory legitimately takes longer
            file_removed = await self._guarded(
                CacheLayer.FILE,
                "cleanup",
                "*",
                self.durable.cleanup_expired(now, self.cleanup_batch_size),
                time_boxed=False,
            )
            removed[CacheLayer.FILE.value] = file_removed or 0

        if any(removed.values()):
            logger.info("Tiered cache cleanup completed", **removed)
        return removed

    def get_stats(self) -> dict[str, Any]:
        hits = self._stats["hits"]
        total_hits = sum(hits.values())
        total_requests = total_hits + self._stats["misses"]
        return {
            **self._stats,
            "hits": dict(hits),
            "layer_errors": dict(self._stats["layer_errors"]),
            "hit_rate": round(total_hits / total_requests, 4) if total_requests else 0.0,
            "layers": [layer.value for layer in self.layers],
            "memory": self.memory.get_stats(),
            "pending_background_tasks": len(self._background_tasks),
        }

    async def health_check(self) -> dict[str, Any]:
        """
        Check availability of each layer.

        Returns:
            Status ``healthy`` when every configured layer answers, otherwise
            ``degraded``. Unconfigured layers are reported as ``disabled``.
        """
        layers: dict[str, str] = {CacheLayer.MEMORY.value: "ok"}
        for layer, backend in ((CacheLayer.REDIS, self.remote), (CacheLayer.FILE, self.durable)):
            if backend is None:
                layers[layer.value] = "disabled"
                continue
            ok = await self._guarded(layer, "ping", "-", backend.ping())
            layers[layer.value] = "ok" if ok else "unavailable"

        status = "degraded" if "unavailable" in layers.values() else "healthy"
        return {"status": status, "layers": layers, "memory_entries": len(self.memory)}

    async def close(self) -> None:
        """Wait for pending background promotions to finish."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    def _promote(self, record: DurableRecord, source: CacheLayer) -> None:
        now = self._clock()
        ttl = min(self.promotion_ttl, record.expires_at - now)
        if ttl <= 0:
            return
        self.memory.set(
            CacheEntry(key=record.key, value=record.data, created_at=now, expires_at=now + ttl, layer=source)
        )
        self._stats["promotions"] += 1

    async def _backfill_remote(self, record: DurableRecord) -> None:
        if self.remote is not None:
            await self._guarded(CacheLayer.REDIS, "backfill", record.key, self.remote.set(record))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background cache task failed", error=str(exc))

    async def _guarded(
        self,
        layer: CacheLayer,
        operation: str,
        key: str,
        awaitable: Awaitable[T],
        time_boxed: bool = True,
    ) -> T | None:
        """Run an L2/L3 operation, returning None instead of raising."""
        timeout = self.layer_timeout if time_boxed else None
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except Exception as e:
            self._stats["layer_errors"][layer.value] += 1
            logger.warning(
                f"{layer.value} cache {operation} failed",
                key=key,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None
