"""
Redis Integration

Builds the async client for the remote cache layer from REDIS_URL and
REDIS_TOKEN. Missing configuration or an unreachable server never stops the
application: the tiered cache simply runs without its remote layer.
"""

import logging

import redis.asyncio as aioredis

from chatbot_resilience.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


async def get_async_redis_client(settings: Settings | None = None) -> aioredis.Redis | None:
    """
    Create and ping an async Redis client.

    Args:
        settings: Settings to read the connection from (global settings when None)

    Returns:
        Connected client, or None when Redis is not configured or unreachable
    """
    settings = settings or get_settings()

    if not settings.REDIS_URL:
        logger.info("REDIS_URL not configured, remote cache layer disabled")
        return None

    client = None
    try:
        client = aioredis.from_url(
            settings.REDIS_URL,
            password=settings.REDIS_TOKEN,
            decode_responses=True,
            socket_connect_timeout=settings.CACHE_LAYER_TIMEOUT_SECONDS,
            socket_timeout=settings.CACHE_LAYER_TIMEOUT_SECONDS,
        )
        await client.ping()
    except Exception as e:
        logger.warning(f"Async Redis connection failed, continuing without remote cache: {e}")
        await close_redis_client(client)
        return None

    logger.info("Async Redis connected for remote cache layer")
    return client


async def close_redis_client(client: aioredis.Redis | None) -> None:
    """Close Redis client connection."""
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("Redis connection closed")
    except Exception as e:
        logger.warning(f"Error closing Redis connection: {e}")


__all__ = [
    "get_async_redis_client",
    "close_redis_client",
]
