"""
Redis service providing a centralized Redis client singleton.

Redis holds the state that must be shared between API instances (rate-limit
counters). Redis connections are stateless with built-in connection pooling,
so a process-wide singleton is appropriate.

Usage:
    from playsplit.services.redis_service import get_redis_client

    async def my_function():
        redis = await get_redis_client()
        if redis:
            await redis.incr("key")
"""

import logging
import os
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Redis configuration from environment
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Connection settings
SOCKET_CONNECT_TIMEOUT = 2
SOCKET_TIMEOUT = 5
RETRY_ON_TIMEOUT = True

# Global Redis client (singleton)
_redis_client: Optional[Redis] = None
_connection_tested: bool = False


async def get_redis_client() -> Optional[Redis]:
    """
    Get or create the Redis client singleton.

    The client is created on first call and reused afterwards; a lost
    connection is detected with PING and the client is recreated.

    Returns:
        Redis client or None if Redis is unreachable
    """
    global _redis_client, _connection_tested

    if _redis_client is not None and _connection_tested:
        try:
            await _redis_client.ping()
            return _redis_client
        except Exception as e:
            logger.warning(f"Redis connection lost, recreating client: {e}")
            await close_redis_connection()

    try:
        client_kwargs = {
            "host": REDIS_HOST,
            "port": REDIS_PORT,
            "db": REDIS_DB,
            "decode_responses": True,
            "socket_connect_timeout": SOCKET_CONNECT_TIMEOUT,
            "socket_timeout": SOCKET_TIMEOUT,
            "retry_on_timeout": RETRY_ON_TIMEOUT,
        }

        if REDIS_PASSWORD:
            client_kwargs["password"] = REDIS_PASSWORD

        _redis_client = Redis(**client_kwargs)

        await _redis_client.ping()
        _connection_tested = True
        logger.info(f"Connected to Redis at {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")
        return _redis_client

    except Exception as e:
        logger.warning(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}: {e}")
        _redis_client = None
        _connection_tested = False
        return None


async def close_redis_connection() -> None:
    """
    Close the Redis connection.

    Called from the FastAPI lifespan on shutdown.
    """
    global _redis_client, _connection_tested

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Closed Redis connection")
        except Exception as e:
            logger.warning(f"Error closing Redis connection: {e}")
        finally:
            _redis_client = None
            _connection_tested = False


async def is_redis_available() -> bool:
    """True if Redis is connected and answering PING."""
    client = await get_redis_client()
    return client is not None


async def redis_incr_window(key: str, window_seconds: int) -> Optional[int]:
    """
    Increment a fixed-window counter.

    The key expires ``window_seconds`` after its first increment, so the
    counter resets with the window.

    Args:
        key: Counter key (callers include the window index in it)
        window_seconds: Window length in seconds

    Returns:
        Count after incrementing, or None if Redis is unavailable
    """
    try:
        client = await get_redis_client()
        if client is None:
            return None
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            count, _ = await pipe.execute()
        return int(count)
    except Exception as e:
        logger.warning(f"Redis INCR error for key {key}: {e}")
        return None
