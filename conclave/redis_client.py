"""Async Redis connections for the backing store."""

import os

from redis.asyncio import ConnectionPool, Redis

from .config import settings

_pool: ConnectionPool | None = None


def redis_url() -> str:
    """``REDIS_URL`` overrides the configured URL."""
    return os.getenv("REDIS_URL", settings.redis_url)


def get_pool() -> ConnectionPool:
    """Lazily create the process-wide connection pool."""
    global _pool
    if _pool is None:
        _pool = ConnectionPool.from_url(
            redis_url(), max_connections=settings.redis_max_connections, decode_responses=True
        )
    return _pool


def get_redis_client() -> Redis:
    """Get an async Redis client from the shared pool."""
    return Redis(connection_pool=get_pool())
