# ============================================================================
# SCOPE: GLOBAL
# Description: Backends del cache en capas. Memoria (L1), Redis (L2) y
#              directorio de archivos JSON (L3) como fallback durable.
# Tenant-Aware: No - las claves ya incluyen el identificador de usuario.
# ============================================================================
"""
Cache backends for the tiered cache.

- MemoryCacheBackend: in-process LRU map; never suspends on reads or writes.
- RedisCacheBackend: remote key-value store shared by every process.
- FileCacheBackend: one JSON file per key in a local directory; survives
  restarts and Redis outages.

Remote and durable backends raise on I/O errors. Catching, time-boxing and
logging those errors is the job of ``TieredCache``.
"""

import asyncio
import hashlib
import logging
import math
import os
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

from chatbot_resilience.core.cache.models import CacheEntry, DurableRecord
from chatbot_resilience.core.shared.timing import Clock, system_clock

logger = logging.getLogger(__name__)

# Encoded names longer than this are replaced by a digest
MAX_FILENAME_LENGTH = 200
DEFAULT_CLEANUP_BATCH_SIZE = 500


class MemoryCacheBackend:
    """In-memory LRU map of ``CacheEntry`` objects."""

    def __init__(self, max_size: int = 10000):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._stats: dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "evictions": 0,
            "expirations": 0,
        }

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def get(self, key: str, now: float) -> CacheEntry | None:
        entry = self._cache.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None

        if entry.is_expired(now):
            del self._cache[key]
            self._stats["expirations"] += 1
            self._stats["misses"] += 1
            return None

        self._cache.move_to_end(key)
        entry.touch(now)
        self._stats["hits"] += 1
        return entry

    def set(self, entry: CacheEntry) -> None:
        if entry.key in self._cache:
            del self._cache[entry.key]
        else:
            self._evict_if_needed()
        self._cache[entry.key] = entry
        self._stats["sets"] += 1

    def delete(self, key: str) -> bool:
        if self._cache.pop(key, None) is not None:
            self._stats["deletes"] += 1
            return True
        return False

    def clear(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        return count

    async def cleanup_expired(self, now: float, batch_size: int = DEFAULT_CLEANUP_BATCH_SIZE) -> int:
        """Remove expired entries, yielding to the event loop between batches."""
        keys = list(self._cache.keys())
        removed = 0
        for start in range(0, len(keys), batch_size):
            for key in keys[start : start + batch_size]:
                entry = self._cache.get(key)
                if entry is not None and entry.is_expired(now):
                    del self._cache[key]
                    removed += 1
            await asyncio.sleep(0)
        self._stats["expirations"] += removed
        return removed

    def get_stats(self) -> dict[str, Any]:
        total_requests = self._stats["hits"] + self._stats["misses"]
        hit_rate = (self._stats["hits"] / max(total_requests, 1)) * 100
        return {
            **self._stats,
            "current_size": len(self._cache),
            "size_limit": self.max_size,
            "hit_rate": f"{hit_rate:.1f}%",
        }

    def _evict_if_needed(self) -> None:
        while len(self._cache) >= self.max_size:
            oldest_key, _ = self._cache.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Memory cache evicted LRU key {oldest_key}")


class DurableBackend(ABC):
    """Interface for the layers that store serialized ``DurableRecord`` envelopes."""

    @abstractmethod
    async def get(self, key: str) -> DurableRecord | None:
        pass

    @abstractmethod
    async def set(self, record: DurableRecord) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass


class RemoteStore(Protocol):
    """Subset of the ``redis.asyncio.Redis`` API used by the remote layer."""

    async def get(self, name: str) -> Any: ...

    async def set(self, name: str, value: str, ex: int | None = None) -> Any: ...

    async def delete(self, *names: str) -> Any: ...

    async def ping(self) -> Any: ...


class RedisCacheBackend(DurableBackend):
    """Remote layer backed by a Redis compatible client."""

    def __init__(self, client: RemoteStore, key_prefix: str = "chatbot:fallback", clock: Clock = system_clock):
        self.client = client
        self.key_prefix = key_prefix
        self._clock = clock

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}" if self.key_prefix else key

    async def get(self, key: str) -> DurableRecord | None:
        raw = await self.client.get(self._redis_key(key))
        if raw is None:
            return None

        record = DurableRecord.loads(raw)
        if record is None or record.key != key:
            logger.warning(f"Discarding malformed Redis cache payload for key {key}")
            await self.client.delete(self._redis_key(key))
            return None

        if record.is_expired(self._clock()):
            await self.client.delete(self._redis_key(key))
            return None
        return record

    async def set(self, record: DurableRecord) -> None:
        ttl = math.ceil(record.expires_at - self._clock())
        if ttl <= 0:
            return
        await self.client.set(self._redis_key(record.key), record.dumps(), ex=ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._redis_key(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())


def encode_filename(key: str) -> str:
    """Map a cache key to a filesystem-safe, collision-free file name.

    Percent-encoding is injective, so distinct keys never share a file;
    keys too long for a file name are replaced by their sha256 digest.
    """
    encoded = quote(key, safe="")
    if len(encoded) > MAX_FILENAME_LENGTH:
        encoded = "sha256-" + hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{encoded}.json"


class FileCacheBackend(DurableBackend):
    """Durable layer storing one JSON document per key."""

    def __init__(self, directory: str | Path, clock: Clock = system_clock):
        self.directory = Path(directory)
        self._clock = clock

    def path_for(self, key: str) -> Path:
        return self.directory / encode_filename(key)

    async def get(self, key: str) -> DurableRecord | None:
        path = self.path_for(key)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None

        record = DurableRecord.loads(raw)
        if record is None or record.key != key:
            logger.warning(f"Ignoring malformed fallback file {path.name}")
            return None

        if record.is_expired(self._clock()):
            await asyncio.to_thread(path.unlink, missing_ok=True)
            return None
        return record

    async def set(self, record: DurableRecord) -> None:
        await asyncio.to_thread(self._write, self.path_for(record.key), record.dumps())

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.path_for(key).unlink, missing_ok=True)

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._is_writable)

    async def cleanup_expired(self, now: float, batch_size: int = DEFAULT_CLEANUP_BATCH_SIZE) -> int:
        """Delete expired records; malformed files are left in place."""
        paths = await asyncio.to_thread(self._list_files)
        removed = 0
        for start in range(0, len(paths), batch_size):
            batch = paths[start : start + batch_size]
            removed += await asyncio.to_thread(self._remove_expired, batch, now)
        return removed

    def _write(self, path: Path, payload: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def _list_files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(self.directory.glob("*.json"))

    def _remove_expired(self, paths: list[Path], now: float) -> int:
        removed = 0
        for path in paths:
            try:
                record = DurableRecord.loads(path.read_text(encoding="utf-8"))
                if record is not None and record.is_expired(now):
                    path.unlink(missing_ok=True)
                    removed += 1
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable fallback file {path.name}: {e}")
        return removed

    def _is_writable(self) -> bool:
        self.directory.mkdir(parents=True, exist_ok=True)
        return os.access(self.directory, os.W_OK)
