"""
External integrations used by the cache and fallback core.
"""

from chatbot_resilience.integrations.redis import close_redis_client, get_async_redis_client

__all__ = [
    "close_redis_client",
    "get_async_redis_client",
]
