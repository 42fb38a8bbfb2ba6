# ============================================================================
# Tests for FallbackDataService
# ============================================================================
"""Unit tests for the chatbot data access wrappers."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatbot_resilience.core.infrastructure.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from chatbot_resilience.core.infrastructure.fallback_executor import FallbackExecutor, FallbackSource
from chatbot_resilience.models.fallback import InteractionRecord, SubscriptionStatus, UserFallbackData
from chatbot_resilience.services.fallback_data_service import PENDING_INDEX_KEY, FallbackDataService

PHONE = "5511999990000"


@pytest.fixture
def source() -> AsyncMock:
    """Primary data source whose methods are async mocks."""
    source = AsyncMock()
    source.find_user_by_phone.return_value = UserFallbackData(id="u1", name="Ana", phone=PHONE)
    source.find_latest_subscription.return_value = SubscriptionStatus(
        has_active=True, status="active", plan_type="monthly"
    )
    source.store_interaction.return_value = None
    source.ping.return_value = True
    return source


@pytest.fixture
def executor(tiered_cache, clock) -> FallbackExecutor:
    breaker = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=3, cooldown_seconds=60), clock=clock)
    return FallbackExecutor(tiered_cache, circuit_breaker=breaker, default_timeout=1.0)


@pytest.fixture
def service(executor, source, clock) -> FallbackDataService:
    return FallbackDataService(executor, source, clock=clock)


def _interaction(message: str = "quero pausar meu plano") -> InteractionRecord:
    return InteractionRecord(phone=PHONE, message=message, response="Claro!", intent="pause", user_id="u1")


class TestUserLookup:
    """Tests for find_user_with_fallback."""

    @pytest.mark.asyncio
    async def test_returns_primary_user(self, service, source) -> None:
        """Should return the user from the database."""
        result = await service.find_user_with_fallback(PHONE)

        assert result.source == FallbackSource.PRIMARY
        assert result.data.name == "Ana"
        source.find_user_by_phone.assert_awaited_once_with(PHONE)

    @pytest.mark.asyncio
    async def test_cached_user_is_revalidated_into_model(self, service, source) -> None:
        """Should turn cached JSON back into a UserFallbackData."""
        await service.find_user_with_fallback(PHONE)
        service.cache.memory.clear()
        source.find_user_by_phone.side_effect = ConnectionError("db down")

        result = await service.find_user_with_fallback(PHONE)

        assert result.fallback_used
        assert result.source == FallbackSource.REDIS
        assert isinstance(result.data, UserFallbackData)
        assert result.data.id == "u1"

    @pytest.mark.asyncio
    async def test_unknown_user_defaults_to_none(self, service, source) -> None:
        """Should return None when neither database nor cache know the user."""
        source.find_user_by_phone.side_effect = ConnectionError("db down")

        result = await service.find_user_with_fallback("5511000000000")

        assert result.data is None
        assert result.source == FallbackSource.DEFAULT

    @pytest.mark.asyncio
    async def test_invalid_cached_payload_falls_back_to_default(self, service, source) -> None:
        """Should discard cached data that no longer matches the model."""
        await service.cache.set(f"user:{PHONE}", {"unexpected": True}, ttl_seconds=60)
        source.find_user_by_phone.side_effect = ConnectionError("db down")

        result = await service.find_user_with_fallback(PHONE)

        assert result.data is None

    @pytest.mark.asyncio
    async def test_empty_phone_raises(self, service) -> None:
        """Should reject empty phone numbers."""
        with pytest.raises(ValueError):
            await service.find_user_with_fallback(" ")


class TestSubscriptionCheck:
    """Tests for check_subscription_with_fallback."""

    @pytest.mark.asyncio
    async def test_returns_primary_status(self, service) -> None:
        """Should return the current subscription."""
        result = await service.check_subscription_with_fallback("u1")

        assert result.data.has_active
        assert result.data.plan_type == "monthly"

    @pytest.mark.asyncio
    async def test_unknown_status_when_nothing_answers(self, service, source) -> None:
        """Should fall back to an unknown, inactive subscription."""
        source.find_latest_subscription.side_effect = TimeoutError()

        result = await service.check_subscription_with_fallback("u2")

        assert result.source == FallbackSource.DEFAULT
        assert result.data == SubscriptionStatus.unknown()


class TestInteractionStorage:
    """Tests for queued interaction persistence."""

    @pytest.mark.asyncio
    async def test_stores_directly_when_database_is_up(self, service, source) -> None:
        """Should write through to the database."""
        result = await service.store_interaction_with_fallback(_interaction())

        assert result.source == FallbackSource.PRIMARY
        source.store_interaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_queues_when_database_fails(self, service, source) -> None:
        """Should queue the interaction on disk when the write fails."""
        source.store_interaction.side_effect = ConnectionError("db down")

        result = await service.store_interaction_with_fallback(_interaction())

        assert result.success
        assert result.fallback_used
        assert result.source == FallbackSource.FILE
        assert result.error.startswith("Queued for later persistence")
        assert await service.cache.get(PENDING_INDEX_KEY) == ["interaction:pending:1700000000000"]

    @pytest.mark.asyncio
    async def test_same_millisecond_gets_unique_keys(self, service, source) -> None:
        """Should never overwrite a queued interaction."""
        source.store_interaction.side_effect = ConnectionError("db down")

        await service.store_interaction_with_fallback(_interaction("primeira"))
        await service.store_interaction_with_fallback(_interaction("segunda"))

        keys = await service.cache.get(PENDING_INDEX_KEY)
        assert keys == ["interaction:pending:1700000000000", "interaction:pending:1700000000000-1"]

    @pytest.mark.asyncio
    async def test_open_circuit_skips_database(self, service, source) -> None:
        """Should queue without calling the database while the circuit is open."""
        source.store_interaction.side_effect = ConnectionError("db down")
        for _ in range(3):
            await service.store_interaction_with_fallback(_interaction())
        source.store_interaction.reset_mock()

        result = await service.store_interaction_with_fallback(_interaction())

        source.store_interaction.assert_not_awaited()
        assert "open" in result.error

    @pytest.mark.asyncio
    async def test_retry_replays_queue(self, service, source, clock) -> None:
        """Should persist queued interactions once the database is back."""
        source.store_interaction.side_effect = ConnectionError("db down")
        await service.store_interaction_with_fallback(_interaction("primeira"))
        clock.advance(1)
        await service.store_interaction_with_fallback(_interaction("segunda"))

        source.store_interaction.side_effect = None
        source.store_interaction.reset_mock()
        stats = await service.retry_pending_interactions()

        assert stats == {"attempted": 2, "succeeded": 2, "failed": 0, "expired": 0}
        assert source.store_interaction.await_count == 2
        assert await service.cache.get(PENDING_INDEX_KEY) is None
        assert service.get_stats()["pending_interactions"] == 0

    @pytest.mark.asyncio
    async def test_retry_keeps_failed_items(self, service, source) -> None:
        """Should leave interactions queued while the database is still down."""
        source.store_interaction.side_effect = ConnectionError("db down")
        await service.store_interaction_with_fallback(_interaction())

        stats = await service.retry_pending_interactions()

        assert stats["failed"] == 1
        assert await service.cache.get(PENDING_INDEX_KEY) == ["interaction:pending:1700000000000"]

    @pytest.mark.asyncio
    async def test_retry_counts_expired_items(self, service, source, clock) -> None:
        """Should drop queue entries whose payload expired."""
        source.store_interaction.side_effect = ConnectionError("db down")
        await service.store_interaction_with_fallback(_interaction())
        await service.cache.invalidate("interaction:pending:1700000000000")

        stats = await service.retry_pending_interactions()

        assert stats == {"attempted": 0, "succeeded": 0, "failed": 0, "expired": 1}

    @pytest.mark.asyncio
    async def test_queue_survives_a_new_service_instance(self, executor, source, clock) -> None:
        """Should read the persisted index written by another instance."""
        source.store_interaction.side_effect = ConnectionError("db down")
        first = FallbackDataService(executor, source, clock=clock)
        await first.store_interaction_with_fallback(_interaction())

        executor.reset_circuit_breaker()
        source.store_interaction.side_effect = None
        second = FallbackDataService(executor, source, clock=clock)
        stats = await second.retry_pending_interactions()

        assert stats["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_store_after_cooldown_keeps_circuit_usable(self, service, source, clock) -> None:
        """Should reach the database again after a cancelled write."""
        source.store_interaction.side_effect = ConnectionError("db down")
        for _ in range(3):
            await service.store_interaction_with_fallback(_interaction())
        clock.advance(60)
        started = asyncio.Event()

        async def hang(interaction):
            started.set()
            await asyncio.sleep(3600)

        source.store_interaction.side_effect = hang
        task = asyncio.create_task(service.store_interaction_with_fallback(_interaction()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        source.store_interaction.side_effect = None
        result = await service.store_interaction_with_fallback(_interaction())

        assert result.source == FallbackSource.PRIMARY
        assert service.executor.circuit_state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_interaction_queued_during_retry_stays_pending(self, service, source) -> None:
        """Should not drop a key queued while the replay was waiting on the database."""
        source.store_interaction.side_effect = ConnectionError("db down")
        await service.store_interaction_with_fallback(_interaction("primeira"))

        entered = asyncio.Event()
        gate = asyncio.Event()

        async def store(interaction):
            if interaction.message == "primeira":
                entered.set()
                await gate.wait()
                return None
            raise ConnectionError("db down")

        source.store_interaction.side_effect = store
        retry = asyncio.create_task(service.retry_pending_interactions())
        await entered.wait()

        queued = await service.store_interaction_with_fallback(_interaction("segunda"))
        assert queued.fallback_used
        gate.set()
        stats = await retry

        assert stats["succeeded"] == 1
        assert await service.cache.get(PENDING_INDEX_KEY) == ["interaction:pending:1700000000000-1"]
        assert service.get_stats()["pending_interactions"] == 1

    @pytest.mark.asyncio
    async def test_rejects_non_interaction(self, service) -> None:
        """Should raise for the wrong argument type."""
        with pytest.raises(TypeError):
            await service.store_interaction_with_fallback({"phone": PHONE})


class TestServiceHealth:
    """Tests for health reporting."""

    @pytest.mark.asyncio
    async def test_health_check(self, service) -> None:
        """Should report database, circuit and cache status."""
        health = await service.health_check()

        assert health["database"] is True
        assert health["fallback"] == "healthy"
        assert health["circuit_breaker"] == "closed"
        assert health["pending_interactions"] == 0

    @pytest.mark.asyncio
    async def test_health_check_with_database_down(self, service, source) -> None:
        """Should report the database as unavailable without raising."""
        source.ping.side_effect = ConnectionError("db down")

        health = await service.health_check()

        assert health["database"] is False
