"""
Cache Module

Tiered cache (memory -> Redis -> file) and the LLM response cache.
"""

from chatbot_resilience.core.cache.backends import (
    DurableBackend,
    FileCacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
    RemoteStore,
    encode_filename,
)
from chatbot_resilience.core.cache.models import (
    CacheEntry,
    CacheKeyError,
    CacheLayer,
    CacheLookup,
    DurableRecord,
)
from chatbot_resilience.core.cache.response_cache import (
    CachedLLMResponse,
    ResponseCache,
    ResponseCacheConfig,
    contains_pii,
    jaccard_similarity,
)
from chatbot_resilience.core.cache.tiered_cache import TieredCache

__all__ = [
    # Tiered cache
    "TieredCache",
    "CacheEntry",
    "CacheKeyError",
    "CacheLayer",
    "CacheLookup",
    "DurableRecord",
    # Backends
    "DurableBackend",
    "FileCacheBackend",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "RemoteStore",
    "encode_filename",
    # Response cache
    "CachedLLMResponse",
    "ResponseCache",
    "ResponseCacheConfig",
    "contains_pii",
    "jaccard_similarity",
]
