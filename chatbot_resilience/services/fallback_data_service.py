"""
Fallback Data Service

Data access used by the WhatsApp chatbot when handling a message: user
lookup, subscription check and interaction storage. Every call goes through
the ``FallbackExecutor`` so a slow or failing database degrades to cached or
default data instead of breaking the conversation.
"""

import asyncio
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from chatbot_resilience.core.cache.tiered_cache import TieredCache
from chatbot_resilience.core.infrastructure.fallback_executor import (
    FallbackExecutor,
    FallbackResult,
    FallbackSource,
)
from chatbot_resilience.core.shared.logger import LogCategory, get_category_logger
from chatbot_resilience.core.shared.timing import Clock, system_clock, to_millis
from chatbot_resilience.models.fallback import InteractionRecord, SubscriptionStatus, UserFallbackData

logger = get_category_logger(__name__, LogCategory.DATABASE)

USER_KEY_PREFIX = "user"
SUBSCRIPTION_KEY_PREFIX = "subscription"
PENDING_INTERACTION_PREFIX = "interaction:pending"
PENDING_INDEX_KEY = f"{PENDING_INTERACTION_PREFIX}:index"
PENDING_INTERACTION_TTL_SECONDS = 86400


class PrimaryDataSource(Protocol):
    """System of record consulted before any fallback (normally the database)."""

    async def find_user_by_phone(self, phone: str) -> UserFallbackData | None: ...

    async def find_latest_subscription(self, user_id: str) -> SubscriptionStatus: ...

    async def store_interaction(self, interaction: InteractionRecord) -> None: ...

    async def ping(self) -> bool: ...


class FallbackDataService:
    """Chatbot data access with circuit breaker, tiered cache and defaults."""

    def __init__(
        self,
        executor: FallbackExecutor,
        source: PrimaryDataSource,
        clock: Clock = system_clock,
    ):
        self.executor = executor
        self.source = source
        self._clock = clock
        self._pending_keys: list[str] = []

    @property
    def cache(self) -> TieredCache:
        return self.executor.cache

    async def find_user_with_fallback(self, phone: str) -> FallbackResult[UserFallbackData | None]:
        """Look up a customer by WhatsApp phone number."""
        self._require(phone, "phone")
        result = await self.executor.execute_with_fallback(
            lambda: self.source.find_user_by_phone(phone),
            f"{USER_KEY_PREFIX}:{phone}",
            default=None,
            operation="user_lookup",
        )
        result.data = self._coerce(UserFallbackData, result.data, None)
        return result

    async def check_subscription_with_fallback(self, user_id: str) -> FallbackResult[SubscriptionStatus]:
        """Get the latest subscription status, ``unknown`` when nothing answers."""
        self._require(user_id, "user_id")
        default = SubscriptionStatus.unknown()
        result = await self.executor.execute_with_fallback(
            lambda: self.source.find_latest_subscription(user_id),
            f"{SUBSCRIPTION_KEY_PREFIX}:{user_id}",
            default=default,
            operation="subscription_check",
        )
        result.data = self._coerce(SubscriptionStatus, result.data, default)
        return result

    async def store_interaction_with_fallback(self, interaction: InteractionRecord) -> FallbackResult[None]:
        """
        Persist an interaction, queuing it in the cache when the database is unavailable.

        Queued interactions are kept for 24 hours and replayed by
        ``retry_pending_interactions``.
        """
        if not isinstance(interaction, InteractionRecord):
            raise TypeError("interaction must be an InteractionRecord")

        breaker = self.executor.circuit_breaker
        error = f"circuit '{breaker.name}' is open"
        if await breaker.allow_request():
            try:
                await asyncio.wait_for(
                    self.source.store_interaction(interaction),
                    timeout=self.executor.default_timeout,
                )
            except asyncio.CancelledError:
                breaker.release_trial()
                raise
            except Exception as e:
                await breaker.record_failure(e)
                error = f"{type(e).__name__}: {e}"
                logger.warning("Failed to store interaction, queuing for later", phone=interaction.phone, error=error)
            else:
                await breaker.record_success()
                return FallbackResult(success=True, data=None, source=FallbackSource.PRIMARY, fallback_used=False)

        key = await self._queue_interaction(interaction)
        source = FallbackSource.FILE if self.cache.durable is not None else FallbackSource.MEMORY
        logger.info("Interaction queued for later persistence", key=key, source=source.value)
        return FallbackResult(
            success=True,
            data=None,
            source=source,
            fallback_used=True,
            error=f"Queued for later persistence ({error})",
        )

    async def retry_pending_interactions(self) -> dict[str, int]:
        """Replay queued interactions against the primary data source."""
        stats = {"attempted": 0, "succeeded": 0, "failed": 0, "expired": 0}
        keys = await self._load_pending_keys()
        done: set[str] = set()

        for key in keys:
            data = await self.cache.get(key)
            interaction = self._coerce(InteractionRecord, data, None)
            if interaction is None:
                stats["expired"] += 1
                done.add(key)
                continue

            stats["attempted"] += 1
            try:
                await self.executor.circuit_breaker.execute(
                    lambda: asyncio.wait_for(
                        self.source.store_interaction(interaction),
                        timeout=self.executor.default_timeout,
                    )
                )
            except Exception as e:
                stats["failed"] += 1
                logger.warning("Retry of queued interaction failed", key=key, error=str(e))
            else:
                stats["succeeded"] += 1
                done.add(key)
                await self.cache.invalidate(key)

        # Keys queued while the replay was suspended stay pending
        self._pending_keys = [key for key in self._pending_keys if key not in done]
        await self._save_pending_keys()
        logger.info("Retried queued interactions", **stats)
        return stats

    async def health_check(self) -> dict[str, Any]:
        """Report database reachability, circuit state and cache health."""
        database_healthy = False
        try:
            database_healthy = bool(
                await asyncio.wait_for(self.source.ping(), timeout=self.executor.default_timeout)
            )
        except Exception as e:
            logger.error("Database health check failed", error=str(e))

        cache_health = await self.cache.health_check()
        return {
            "database": database_healthy,
            "fallback": cache_health["status"],
            "cache_layers": cache_health["layers"],
            "circuit_breaker": self.executor.circuit_state.value,
            "pending_interactions": len(self._pending_keys),
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.executor.get_stats(),
            "pending_interactions": len(self._pending_keys),
        }

    def reset_circuit_breaker(self) -> None:
        self.executor.reset_circuit_breaker()

    async def _queue_interaction(self, interaction: InteractionRecord) -> str:
        await self._load_pending_keys()
        key = f"{PENDING_INTERACTION_PREFIX}:{to_millis(self._clock())}"
        suffix = 1
        base = key
        while key in self._pending_keys:
            key = f"{base}-{suffix}"
            suffix += 1

        await self.cache.set(key, interaction, PENDING_INTERACTION_TTL_SECONDS)
        self._pending_keys.append(key)
        await self._save_pending_keys()
        return key

    async def _load_pending_keys(self) -> list[str]:
        """Merge the persisted queue index (from a previous process) into memory."""
        stored = await self.cache.get(PENDING_INDEX_KEY)
        if isinstance(stored, list):
            for key in stored:
                if isinstance(key, str) and key not in self._pending_keys:
                    self._pending_keys.append(key)
        return list(self._pending_keys)

    async def _save_pending_keys(self) -> None:
        if self._pending_keys:
            await self.cache.set(PENDING_INDEX_KEY, self._pending_keys, PENDING_INTERACTION_TTL_SECONDS)
        else:
            await self.cache.invalidate(PENDING_INDEX_KEY)

    @staticmethod
    def _coerce(model: type[BaseModel], data: Any, default: Any) -> Any:
        """Validate cached JSON back into its model; invalid payloads fall back to ``default``."""
        if data is None or isinstance(data, model):
            return data if data is not None else default
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Discarding invalid cached {model.__name__}", errors=e.error_count())
            return default

    @staticmethod
    def _require(value: Any, name: str) -> None:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{name} must be a non-empty string")
