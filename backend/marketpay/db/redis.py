"""Shared Redis client for the change feed.

Most connections taken from this pool are Pub/Sub subscriptions held open by
live payment streams, often idle for minutes between notifications. The pool
sends periodic health checks and enables TCP keepalive so a silently dropped
subscription is detected before the observer's next read.
"""

import redis.asyncio as redis
import structlog

from marketpay.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


def redis_client_options(settings: Settings) -> dict:
    """Connection options for the change-feed pool."""
    return {
        "encoding": "utf-8",
        "decode_responses": True,
        "max_connections": settings.redis_max_connections,
        "health_check_interval": settings.redis_health_check_interval,
        "socket_keepalive": True,
        "socket_connect_timeout": settings.redis_connect_timeout_seconds,
        "client_name": settings.change_feed_prefix,
    }


async def init_redis(url: str | None = None, settings: Settings | None = None) -> None:
    """Create the shared client and check that Redis answers."""
    global _redis

    if _redis is not None:
        return

    settings = settings or get_settings()
    client = redis.from_url(url or settings.redis_url, **redis_client_options(settings))
    try:
        await client.ping()
    except redis.RedisError:
        await client.aclose()
        logger.error("change_feed_redis_unreachable", max_connections=settings.redis_max_connections)
        raise

    _redis = client
    logger.info("change_feed_redis_ready", max_connections=settings.redis_max_connections)


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
