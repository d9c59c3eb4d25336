"""
Redis client initialization and the dispatcher wake channel.

Enqueue never talks to Redis. After committing a transaction that enqueued
work, callers may publish a wake hint so dispatcher loops poll right away
instead of waiting for the next interval. Losing a hint only delays work
by one poll interval.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from taskbox.app.core.config import Settings, settings

logger = logging.getLogger("taskbox.redis")

# Create async Redis client
redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def ping_redis() -> bool:
    """
    Test Redis connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        return await redis_client.ping()
    except (redis.RedisError, OSError):
        return False


async def wake_dispatchers(reason: str = "enqueue", app_settings: Optional[Settings] = None) -> bool:
    """
    Publish a wake hint on the outbox channel.

    Call only after the enqueuing transaction has committed.
    `app_settings` defaults to the process settings.

    Returns:
        True if the hint was published, False if waking is disabled or Redis
        is unreachable.
    """
    cfg = app_settings or settings
    if not cfg.outbox_wake_enabled:
        return False
    try:
        await redis_client.publish(cfg.outbox_wake_channel, reason)
        return True
    except (redis.RedisError, OSError):
        logger.warning("Failed to publish dispatcher wake hint", exc_info=True)
        return False
