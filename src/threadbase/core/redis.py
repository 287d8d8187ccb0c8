"""Redis connection pool used as the tenant lookup cache.

Only TenantResolver writes to Redis, under tenant:lookup:{host_or_id} and
tenant:record:{tenant_id} keys; the cache is optional and every failure
degrades to a database lookup.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.threadbase.config import get_settings

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None
