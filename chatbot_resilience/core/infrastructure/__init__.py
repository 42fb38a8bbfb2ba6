"""
Infrastructure Module

Circuit breaker and execute-with-fallback for calls to the primary data store.
"""

from chatbot_resilience.core.infrastructure.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitBreakerStats,
    CircuitState,
)
from chatbot_resilience.core.infrastructure.fallback_executor import (
    FallbackExecutor,
    FallbackResult,
    FallbackSource,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerStats",
    "CircuitState",
    "FallbackExecutor",
    "FallbackResult",
    "FallbackSource",
]
