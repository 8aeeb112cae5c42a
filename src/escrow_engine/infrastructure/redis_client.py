"""Redis client for idempotency keys.

Usage:
    from escrow_engine.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from escrow_engine.config import get_settings
from escrow_engine.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

IDEMPOTENCY_PREFIX = "escrow:idempotency:"
PENDING_MARKER = "pending"


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_redis_ready() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def reserve_idempotency(key: str) -> str | None:
    """Atomically claim an idempotency key.

    Returns None if the key was free and is now reserved, otherwise the
    value already stored under it (a contract id, or ``"pending"`` while the
    first request is still running).
    """
    settings = get_settings()
    redis = get_redis()
    claimed = await redis.set(
        f"{IDEMPOTENCY_PREFIX}{key}",
        PENDING_MARKER,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    if claimed:
        return None
    return await redis.get(f"{IDEMPOTENCY_PREFIX}{key}") or PENDING_MARKER


async def complete_idempotency(key: str, value: str) -> None:
    """Store the result (contract id) under a reserved key."""
    settings = get_settings()
    redis = get_redis()
    await redis.set(
        f"{IDEMPOTENCY_PREFIX}{key}",
        value,
        ex=settings.redis_idempotency_ttl_seconds,
    )


async def release_idempotency(key: str) -> None:
    """Forget a reservation whose operation failed, so it can be retried."""
    redis = get_redis()
    await redis.delete(f"{IDEMPOTENCY_PREFIX}{key}")
