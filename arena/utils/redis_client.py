"""Redis client management."""

from redis.asyncio import ConnectionPool, Redis

from arena.config import get_settings

# Global Redis connection pool and client instance
redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None


def get_redis() -> Redis:
    """Get (and lazily create) the shared Redis client.

    No connection is opened until the first command.
    """
    global redis_pool, redis_client
    if redis_client is None:
        settings = get_settings()
        redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_connect_timeout,
            retry_on_timeout=True,
            encoding="utf-8",
            decode_responses=True,
        )
        redis_client = Redis(connection_pool=redis_pool)
    return redis_client


async def close_redis() -> None:
    """Close Redis connection and pool."""
    global redis_pool, redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None
