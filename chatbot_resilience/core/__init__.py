"""
Core Module

Stores and resilience primitives. The composition root lives in
``chatbot_resilience.core.container``.
"""

from chatbot_resilience.core.cache import ResponseCache, TieredCache
from chatbot_resilience.core.infrastructure import CircuitBreaker, FallbackExecutor, FallbackResult
from chatbot_resilience.core.memory import ConversationMemoryStore

__all__ = [
    "CircuitBreaker",
    "ConversationMemoryStore",
    "FallbackExecutor",
    "FallbackResult",
    "ResponseCache",
    "TieredCache",
]
