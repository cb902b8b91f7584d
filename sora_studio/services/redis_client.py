"""
Optional Redis connection manager.

Builds an async Redis client that degrades gracefully to ``None`` when
REDIS_URL is not set or Redis is unreachable.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis

_log = logging.getLogger(__name__)


async def connect_redis(url: Optional[str]) -> Optional[aioredis.Redis]:
    """Connect to Redis if a URL is configured. Safe to call always."""
    if not url:
        _log.info("[redis] REDIS_URL not set, cache and Redis rate limiting disabled")
        return None

    client = aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )
    try:
        # Verify connectivity
        await client.ping()
    except (aioredis.RedisError, OSError) as exc:
        _log.warning(f"[redis] Connection failed ({exc}), running without Redis")
        await client.aclose()
        return None

    _log.info("[redis] Connected successfully")
    return client


async def close_redis(client: Optional[aioredis.Redis]) -> None:
    """Gracefully close the Redis connection pool."""
    if client is None:
        return
    try:
        await client.aclose()
        _log.info("[redis] Connection closed")
    except (aioredis.RedisError, OSError) as exc:
        _log.debug(f"[redis] Close failed: {exc}")


async def is_redis_healthy(client: Optional[aioredis.Redis]) -> bool:
    """Quick health probe: returns False rather than raising."""
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except (aioredis.RedisError, OSError):
        return False
