"""
Resilience Container

Composition root for the cache and fallback core. Builds every component
from settings, owns the Redis connection and the maintenance loops, and
exposes ``init()`` / ``shutdown()`` for the application lifecycle.

Usage:
    container = ResilienceContainer(primary_source=database_gateway)
    await container.init()

    result = await container.data_service.find_user_with_fallback(phone)

    await container.shutdown()
"""

import logging
from typing import Any

from chatbot_resilience.config.settings import Settings, get_settings
from chatbot_resilience.core.background_services import CacheMaintenanceManager
from chatbot_resilience.core.cache.backends import FileCacheBackend, MemoryCacheBackend, RedisCacheBackend, RemoteStore
from chatbot_resilience.core.cache.response_cache import ResponseCache, ResponseCacheConfig
from chatbot_resilience.core.cache.tiered_cache import TieredCache
from chatbot_resilience.core.infrastructure.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from chatbot_resilience.core.infrastructure.fallback_executor import FallbackExecutor
from chatbot_resilience.core.memory.conversation_store import ConversationMemoryConfig, ConversationMemoryStore
from chatbot_resilience.core.shared.logger import configure_logging
from chatbot_resilience.core.shared.timing import Clock, system_clock
from chatbot_resilience.integrations.redis import close_redis_client, get_async_redis_client
from chatbot_resilience.services.fallback_data_service import FallbackDataService, PrimaryDataSource

logger = logging.getLogger(__name__)


class ResilienceContainer:
    """
    Owns the process-wide stores.

    Components are only available between ``init()`` and ``shutdown()``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        primary_source: PrimaryDataSource | None = None,
        redis_client: RemoteStore | None = None,
        clock: Clock = system_clock,
        setup_logging: bool = False,
    ):
        """
        Initialize container.

        Args:
            settings: Configuration (global settings when None)
            primary_source: System of record for ``data_service``; without it
                ``data_service`` is unavailable
            redis_client: Pre-built remote store; when given, REDIS_URL is
                ignored and the client is not closed on shutdown
            clock: Time source shared by every component
            setup_logging: Apply LOG_LEVEL, LOG_FORMAT and LOG_FILE to the root
                logger during init()
        """
        self.settings = settings or get_settings()
        self._primary_source = primary_source
        self._injected_redis = redis_client
        self._redis_client: Any = None
        self._clock = clock
        self._setup_logging = setup_logging
        self._initialized = False

        self._tiered_cache: TieredCache | None = None
        self._executor: FallbackExecutor | None = None
        self._response_cache: ResponseCache | None = None
        self._conversation_memory: ConversationMemoryStore | None = None
        self._data_service: FallbackDataService | None = None
        self.maintenance = CacheMaintenanceManager(clock=clock)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def tiered_cache(self) -> TieredCache:
        return self._require(self._tiered_cache, "tiered_cache")

    @property
    def executor(self) -> FallbackExecutor:
        return self._require(self._executor, "executor")

    @property
    def response_cache(self) -> ResponseCache:
        return self._require(self._response_cache, "response_cache")

    @property
    def conversation_memory(self) -> ConversationMemoryStore:
        return self._require(self._conversation_memory, "conversation_memory")

    @property
    def data_service(self) -> FallbackDataService:
        return self._require(self._data_service, "data_service")

    async def init(self) -> None:
        """Connect Redis, build every component and start the cleanup loops."""
        if self._initialized:
            logger.warning("ResilienceContainer already initialized, skipping init")
            return

        logger.info("Initializing resilience container...")
        settings = self.settings
        if self._setup_logging:
            configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, settings.LOG_FILE)

        if self._injected_redis is not None:
            self._redis_client = self._injected_redis
        else:
            self._redis_client = await get_async_redis_client(settings)

        remote = None
        if self._redis_client is not None:
            remote = RedisCacheBackend(self._redis_client, key_prefix=settings.REDIS_KEY_PREFIX, clock=self._clock)

        self._tiered_cache = TieredCache(
            memory=MemoryCacheBackend(),
            remote=remote,
            durable=FileCacheBackend(settings.FALLBACK_STORAGE_DIR, clock=self._clock),
            promotion_ttl=settings.CACHE_MEMORY_PROMOTION_TTL_SECONDS,
            layer_timeout=settings.CACHE_LAYER_TIMEOUT_SECONDS,
            clock=self._clock,
        )

        breaker = CircuitBreaker(
            name="database",
            config=CircuitBreakerConfig(
                failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                cooldown_seconds=settings.CIRCUIT_BREAKER_COOLDOWN_SECONDS,
            ),
            clock=self._clock,
        )
        self._executor = FallbackExecutor(
            cache=self._tiered_cache,
            circuit_breaker=breaker,
            default_timeout=settings.PRIMARY_OPERATION_TIMEOUT_SECONDS,
            cache_ttl=settings.FALLBACK_CACHE_TTL_SECONDS,
        )

        self._response_cache = ResponseCache(
            ResponseCacheConfig(
                max_size=settings.RESPONSE_CACHE_MAX_SIZE,
                default_ttl=settings.RESPONSE_CACHE_TTL_SECONDS,
                similarity_threshold=settings.RESPONSE_CACHE_SIMILARITY_THRESHOLD,
                semantic_lookup_threshold=settings.RESPONSE_CACHE_SEMANTIC_LOOKUP_THRESHOLD,
                min_confidence=settings.RESPONSE_CACHE_MIN_CONFIDENCE,
            ),
            clock=self._clock,
        )

        self._conversation_memory = ConversationMemoryStore(
            ConversationMemoryConfig(
                max_messages_per_conversation=settings.CONVERSATION_MAX_MESSAGES,
                conversation_timeout=settings.conversation_timeout_seconds,
                enable_summarization=settings.CONVERSATION_ENABLE_SUMMARIZATION,
                max_conversations=settings.CONVERSATION_MAX_CONVERSATIONS,
            ),
            clock=self._clock,
        )

        if self._primary_source is not None:
            self._data_service = FallbackDataService(self._executor, self._primary_source, clock=self._clock)

        self.maintenance = CacheMaintenanceManager(clock=self._clock)
        self.maintenance.register(
            "tiered_cache", self._tiered_cache.cleanup, settings.CACHE_CLEANUP_INTERVAL_SECONDS
        )
        self.maintenance.register(
            "response_cache", self._response_cache.cleanup, settings.RESPONSE_CACHE_CLEANUP_INTERVAL_SECONDS
        )
        self.maintenance.register(
            "conversation_memory",
            self._conversation_memory.cleanup,
            settings.CONVERSATION_CLEANUP_INTERVAL_SECONDS,
        )
        await self.maintenance.start()

        self._initialized = True
        logger.info(
            f"Resilience container initialized (layers: {[layer.value for layer in self._tiered_cache.layers]})"
        )

    async def shutdown(self) -> None:
        """Stop the cleanup loops, flush background work and close Redis."""
        if not self._initialized:
            logger.warning("ResilienceContainer not initialized, skipping shutdown")
            return

        logger.info("Shutting down resilience container...")
        await self.maintenance.stop()
        if self._tiered_cache is not None:
            await self._tiered_cache.close()
        if self._injected_redis is None:
            await close_redis_client(self._redis_client)
        self._redis_client = None

        self._tiered_cache = None
        self._executor = None
        self._response_cache = None
        self._conversation_memory = None
        self._data_service = None
        self._initialized = False
        logger.info("Resilience container shutdown completed")

    async def health_check(self) -> dict[str, Any]:
        cache_health = await self.tiered_cache.health_check()
        health: dict[str, Any] = {
            "status": cache_health["status"],
            "cache": cache_health,
            "circuit_breaker": self.executor.circuit_state.value,
            "maintenance": self.maintenance.get_status(),
        }
        if self._data_service is not None:
            health["data"] = await self._data_service.health_check()
        return health

    def get_stats(self) -> dict[str, Any]:
        return {
            "fallback": self.executor.get_stats(),
            "response_cache": self.response_cache.get_stats(),
            "conversation_memory": self.conversation_memory.get_stats(),
            "maintenance": self.maintenance.get_status(),
        }

    async def __aenter__(self) -> "ResilienceContainer":
        await self.init()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> bool:
        await self.shutdown()
        return False

    def _require(self, component: Any, name: str) -> Any:
        if component is None:
            if name == "data_service" and self._initialized:
                raise RuntimeError("data_service requires a primary_source")
            raise RuntimeError(f"ResilienceContainer.{name} is unavailable before init()")
        return component
