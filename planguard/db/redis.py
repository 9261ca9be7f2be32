"""Process-wide Redis client for the entitlement cache and sweep dedup claims."""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from planguard.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None, client: redis.Redis | None = None) -> redis.Redis:
    """Create (or adopt) the shared client and check it answers PING.

    Pass client to reuse an existing connection, e.g. a fakeredis instance.
    Calling again after a successful init returns the current client.

    Raises:
        RedisError: The server did not answer
    """
    global _redis

    if _redis is not None:
        return _redis

    if client is None:
        client = redis.from_url(
            url or get_settings().redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    try:
        await client.ping()
    except RedisError as e:
        logger.error("redis_connect_failed", error=str(e), error_type=type(e).__name__)
        await client.aclose()
        raise

    _redis = client
    logger.info("redis_connected")
    return _redis


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared client. Raises RuntimeError before init_redis()."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
