"""
Redis client factory with connection pooling.

Redis carries the Celery broker traffic; the API only talks to it for
health checks.
"""

from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends

from crawlgraph.core.config import get_settings

_redis_pool: aioredis.ConnectionPool | None = None


def _get_pool() -> aioredis.ConnectionPool:
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.ConnectionPool.from_url(
            str(settings.REDIS_DSN),
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=5.0,
            retry_on_timeout=True,
            health_check_interval=30,
            decode_responses=True,
        )
    return _redis_pool


async def get_redis_client() -> aioredis.Redis:
    """Get a Redis client from the connection pool."""
    return aioredis.Redis(connection_pool=_get_pool())


async def close_redis_pool() -> None:
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.disconnect()
    _redis_pool = None


RedisClient = Annotated[aioredis.Redis, Depends(get_redis_client)]
