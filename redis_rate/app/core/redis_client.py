"""Redis client construction with connection pooling.

The limiter never holds a connection across calls: every command checks
one out of the pool built here, so a single client can be shared by many
concurrent tasks.
"""

import redis.asyncio as aioredis

from redis_rate.app.core.config import settings


def create_redis_client(url: str | None = None, **kwargs) -> aioredis.Redis:
    """Create a new Redis client with settings-driven pool limits.

    The returned client should be closed with ``await client.aclose()``.

    Args:
        url: Redis URL, defaults to settings.redis_url
        **kwargs: Override default settings. Can include:
            - max_connections: Pool size
            - socket_timeout: Per-command timeout
            - socket_connect_timeout: Connection timeout
            - pool_timeout: Time to wait for a free connection

    Returns:
        A redis.asyncio.Redis client backed by a BlockingConnectionPool.
    """
    pool = aioredis.BlockingConnectionPool.from_url(
        url or settings.redis_url,
        max_connections=kwargs.get("max_connections", settings.redis_max_connections),
        timeout=kwargs.get("pool_timeout", settings.redis_pool_timeout),
        socket_timeout=kwargs.get("socket_timeout", settings.redis_socket_timeout),
        socket_connect_timeout=kwargs.get(
            "socket_connect_timeout", settings.redis_socket_connect_timeout
        ),
    )
    # from_pool hands pool ownership to the client, so aclose() releases it
    return aioredis.Redis.from_pool(pool)
