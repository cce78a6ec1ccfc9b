"""Redis client for idempotency keys and the notification channel.

Redis is optional at runtime: when it cannot be reached at startup the app
falls back to the logging notification publisher and skips idempotency
checks (callers test `redis_available()` first).

Usage:
    from multisig_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.publish(settings.redis_notification_channel, payload)
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from multisig_escrow.config import get_settings
from multisig_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis | None:
    """Connect to redis. Returns None (and logs) when redis is unreachable."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("redis.unavailable", url=settings.redis_url, error=str(e))
        await client.aclose()
        return None
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def get_idempotent_result(key: str) -> str | None:
    """Return the value stored for an idempotency key (e.g. the deal id), or None."""
    return await get_redis().get(f"idempotency:{key}")


async def set_idempotency(key: str, value: str = "1") -> None:
    """Mark an idempotency key as used with a TTL."""
    settings = get_settings()
    await get_redis().set(
        f"idempotency:{key}",
        value,
        ex=settings.redis_idempotency_ttl_seconds,
    )
