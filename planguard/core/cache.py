"""Read-through entitlement cache backed by Redis.

Cached values are JSON-encoded so a cached ``null`` (feature undefined,
no limit) is distinguishable from a miss. The cache never decides an
outcome: a Redis failure is logged and the value is recomputed.

Key layout:
- org_{id}_has_{feature}
- org_{id}_limit_{feature}
- org_{id}_usage_{feature}
- org_{id}_workspace_{wid}_usage_{feature}
- org_{id}_yearly_anchor
"""

import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from planguard.core.config import get_settings
from planguard.db.redis import get_redis

logger = structlog.get_logger(__name__)


def has_feature_key(organization_id: int, feature: str) -> str:
    return f"org_{organization_id}_has_{feature}"


def limit_key(organization_id: int, feature: str) -> str:
    return f"org_{organization_id}_limit_{feature}"


def usage_key(organization_id: int, feature: str, workspace_id: int | None = None) -> str:
    if workspace_id is not None:
        return f"org_{organization_id}_workspace_{workspace_id}_usage_{feature}"
    return f"org_{organization_id}_usage_{feature}"


def yearly_anchor_key(organization_id: int) -> str:
    return f"org_{organization_id}_yearly_anchor"


@runtime_checkable
class Cache(Protocol):
    """Interface shared by the Redis cache and the no-op cache."""

    async def remember(self, key: str, ttl: int, compute: Callable[[], Awaitable[Any]]) -> Any: ...

    async def forget(self, *keys: str) -> None: ...

    async def forget_organization(self, organization_id: int) -> None: ...

    async def claim(self, key: str, ttl: int) -> bool: ...


class EntitlementCache:
    """Redis-backed read-through cache."""

    def __init__(self, client: redis.Redis):
        self.redis = client

    async def remember(self, key: str, ttl: int, compute: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for key, computing and storing it on a miss."""
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            raw = None

        if raw is not None:
            return json.loads(raw)

        value = await compute()

        try:
            await self.redis.set(key, json.dumps(value), ex=ttl)
        except RedisError as e:
            logger.warning("cache_write_failed", key=key, error=str(e))

        return value

    async def forget(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.redis.delete(*keys)
        except RedisError as e:
            logger.warning("cache_invalidate_failed", keys=list(keys), error=str(e))

    async def forget_organization(self, organization_id: int) -> None:
        """Drop every cached entry for an organization (plan attach, override change)."""
        pattern = f"org_{organization_id}_*"
        try:
            keys = [key async for key in self.redis.scan_iter(match=pattern)]
            if keys:
                await self.redis.delete(*keys)
        except RedisError as e:
            logger.warning(
                "cache_invalidate_failed",
                organization_id=organization_id,
                error=str(e),
            )

    async def claim(self, key: str, ttl: int) -> bool:
        """Atomically claim key for ttl seconds. False if already claimed.

        A Redis failure also returns False so a notification is never sent twice.
        """
        try:
            result = await self.redis.set(key, "1", nx=True, ex=ttl)
        except RedisError as e:
            logger.warning("cache_claim_failed", key=key, error=str(e))
            return False
        return bool(result)


class NullCache:
    """No-op cache: every read recomputes, every claim succeeds."""

    async def remember(self, key: str, ttl: int, compute: Callable[[], Awaitable[Any]]) -> Any:
        return await compute()

    async def forget(self, *keys: str) -> None:
        return None

    async def forget_organization(self, organization_id: int) -> None:
        return None

    async def claim(self, key: str, ttl: int) -> bool:
        return True


def get_cache() -> Cache:
    """Return the configured cache (requires init_redis() when enabled)."""
    if not get_settings().cache_enabled:
        return NullCache()
    return EntitlementCache(get_redis())
