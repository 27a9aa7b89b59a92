from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool


def create_redis(url: str) -> Redis:
    """
    Redis client backed by its own connection pool.
    Nothing connects until the first command.
    """
    pool = ConnectionPool.from_url(url)
    return Redis(connection_pool=pool)


async def close_redis(client: Redis):
    """Close Redis connections on app shutdown."""
    await client.aclose()
    await client.connection_pool.disconnect()
