"""
Circuit Breaker Pattern Implementation

Guards the primary data store: after repeated failures requests skip it and
go straight to cached or default data until a cooldown has passed.

States:
- CLOSED: normal operation, requests pass through
- OPEN: failure threshold reached, requests are skipped
- HALF_OPEN: cooldown elapsed, a single trial request is let through
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from chatbot_resilience.core.shared.logger import LogCategory, get_category_logger
from chatbot_resilience.core.shared.timing import Clock, elapsed_since, has_elapsed, system_clock

logger = get_category_logger(__name__, LogCategory.DATABASE)

T = TypeVar("T")

# Number of state transitions kept for diagnostics
MAX_STATE_HISTORY = 50


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Failure threshold reached, requests skipped
    HALF_OPEN = "half_open"  # Cooldown elapsed, one trial call allowed


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 3  # Consecutive failures before opening
    cooldown_seconds: float = 60.0  # Time in OPEN before probing
    excluded_exceptions: tuple = ()  # Exceptions that don't count as failures

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be positive")


def _iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, UTC).isoformat()


@dataclass
class CircuitBreakerStats:
    """Statistics for circuit breaker."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "rejected_requests": self.rejected_requests,
            "state_changes": self.state_changes,
            "last_failure_time": _iso(self.last_failure_time),
            "last_success_time": _iso(self.last_success_time),
            "success_rate": self.success_rate,
        }

    @property
    def success_rate(self) -> float:
        """Calculate success rate over attempted requests."""
        attempted = self.successful_requests + self.failed_requests
        if attempted == 0:
            return 1.0
        return self.successful_requests / attempted


class CircuitBreakerError(Exception):
    """Raised by ``execute`` when the circuit is open."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Circuit breaker for the primary data store.

    ``FallbackExecutor`` drives it through ``allow_request``,
    ``record_success`` and ``record_failure``. Callers that prefer to fail
    fast can use ``execute`` (or the breaker as a decorator), which raises
    ``CircuitBreakerError`` while the circuit is open.

    Example:
        ```python
        breaker = CircuitBreaker(name="database")

        @breaker
        async def load_user(phone):
            return await repository.find_by_phone(phone)
        ```
    """

    def __init__(
        self,
        name: str = "database",
        config: CircuitBreakerConfig | None = None,
        clock: Clock = system_clock,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Identifier for this circuit breaker
            config: Configuration options
            clock: Time source, injectable for tests
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False
        self._stats = CircuitBreakerStats()
        self._state_history: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current state (an OPEN circuit whose cooldown elapsed reports HALF_OPEN)."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> float | None:
        return self._last_failure_at

    @property
    def stats(self) -> CircuitBreakerStats:
        """Get statistics."""
        return self._stats

    @property
    def retry_after(self) -> float:
        """Seconds until an OPEN circuit lets a trial call through (0 otherwise)."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.cooldown_seconds - elapsed_since(self._last_failure_at, self._clock()))

    def _cooldown_elapsed(self) -> bool:
        return has_elapsed(self._last_failure_at, self.config.cooldown_seconds, self._clock())

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state."""
        if self._state == new_state:
            return

        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1
        self._state_history.append(
            {"from": old_state.value, "to": new_state.value, "at": _iso(self._clock())}
        )
        del self._state_history[:-MAX_STATE_HISTORY]

        logger.info(
            f"Circuit breaker '{self.name}' state change: {old_state.value} -> {new_state.value}",
            circuit_breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=self._failure_count,
        )

    async def allow_request(self) -> bool:
        """
        Decide whether the primary operation may be attempted now.

        An OPEN circuit moves to HALF_OPEN once the cooldown has elapsed and
        lets exactly one trial call through; other callers are rejected until the
        trial call's outcome is recorded.
        """
        async with self._lock:
            self._stats.total_requests += 1

            if self._state == CircuitState.OPEN and self._cooldown_elapsed():
                self._transition_to(CircuitState.HALF_OPEN)
                self._trial_in_flight = False

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True

            self._stats.rejected_requests += 1
            logger.debug(
                f"Circuit breaker '{self.name}' rejected request",
                state=self._state.value,
                retry_after=round(self.retry_after, 3),
            )
            return False

    async def record_success(self) -> None:
        """Record a successful primary call: close the circuit and reset the count."""
        async with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = self._clock()
            self._failure_count = 0
            self._trial_in_flight = False
            self._transition_to(CircuitState.CLOSED)

    def release_trial(self) -> None:
        """Free the HALF_OPEN trial slot without recording an outcome (the call was cancelled)."""
        if self._trial_in_flight:
            self._trial_in_flight = False
            logger.debug(f"Circuit breaker '{self.name}' trial slot released", state=self._state.value)

    async def record_failure(self, exception: BaseException | None = None) -> None:
        """Record a failed or timed-out primary call."""
        if exception is not None and isinstance(exception, self.config.excluded_exceptions):
            # Not counted; only frees the trial slot
            async with self._lock:
                self._trial_in_flight = False
            return

        async with self._lock:
            now = self._clock()
            self._stats.failed_requests += 1
            self._stats.last_failure_time = now
            self._failure_count += 1
            self._last_failure_at = now
            self._trial_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                # Trial call failed, restart the cooldown
                self._transition_to(CircuitState.OPEN)
            elif self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute a coroutine function through the circuit breaker.

        Raises:
            CircuitBreakerError: If the circuit is open
            Exception: Original exception from the function
        """
        if not await self.allow_request():
            retry_after = self.retry_after
            raise CircuitBreakerError(
                f"Circuit breaker '{self.name}' is open. Retry after {retry_after:.1f}s",
                retry_after=retry_after,
            )

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self.release_trial()
            raise
        except Exception as e:
            await self.record_failure(e)
            raise
        await self.record_success()
        return result

    def __call__(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Decorator for async functions."""

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.execute(func, *args, **kwargs)

        return wrapper

    def reset(self) -> None:
        """Reset circuit breaker to its initial CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._trial_in_flight = False
        self._stats = CircuitBreakerStats()
        self._state_history.clear()
        logger.info(f"Circuit breaker '{self.name}' reset")

    def get_status(self) -> dict[str, Any]:
        """Get current status."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "last_failure_at": _iso(self._last_failure_at),
            "retry_after": round(self.retry_after, 3),
            "stats": self._stats.to_dict(),
            "recent_state_changes": list(self._state_history),
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "cooldown_seconds": self.config.cooldown_seconds,
            },
        }
