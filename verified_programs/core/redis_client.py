"""
Redis client module for single-flight locks, job state and rate-limit counters.
Provides async Redis connections with connection pooling.

Redis is not a system of record here. Every helper logs and returns a
sentinel (``None`` / ``False`` / ``{}``) when Redis is unreachable, and the
callers decide how to degrade.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import ConnectionPool

from verified_programs.core.config import settings

logger = logging.getLogger(__name__)

# Create Redis connection pool
redis_pool = ConnectionPool.from_url(
    settings.redis_url,
    max_connections=50,
    retry_on_timeout=True,
    socket_keepalive=True,
    socket_connect_timeout=5,
    socket_timeout=5,
)

# KEYS[1] = lock key, ARGV[1] = owner token
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# KEYS[1] = lock key, ARGV[1] = owner token, ARGV[2] = new ttl in milliseconds
_COMPARE_AND_PEXPIRE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

# KEYS[1] = counter key, ARGV[1] = window in seconds
_INCR_WITH_EXPIRY = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""


class RedisClient:
    """Async Redis client with locking and counter utilities."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis = client or redis.Redis(connection_pool=redis_pool)

    async def set_if_absent(self, key: str, value: str, ex: int) -> Optional[bool]:
        """
        Conditional write with expiry (SET NX EX).

        Returns True when the key was written, False when it already exists
        and None when Redis could not be reached.
        """
        try:
            return bool(await self.redis.set(key, value, ex=ex, nx=True))
        except Exception as e:
            logger.error(f"Redis set_if_absent error for key {key}: {e}")
            return None

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only while it still holds ``value`` (owner-checked release)."""
        try:
            return bool(await self.redis.eval(_COMPARE_AND_DELETE, 1, key, value))
        except Exception as e:
            logger.error(f"Redis delete_if_equals error for key {key}: {e}")
            return False

    async def expire_if_equals(self, key: str, value: str, ex: int) -> bool:
        """Reset the expiry of key only while it still holds ``value`` (owner-checked renewal)."""
        try:
            return bool(await self.redis.eval(_COMPARE_AND_PEXPIRE, 1, key, value, int(ex * 1000)))
        except Exception as e:
            logger.error(f"Redis expire_if_equals error for key {key}: {e}")
            return False

    async def incr_with_expiry(self, key: str, ex: int) -> Optional[int]:
        """Atomically increment a counter, starting its expiry on first use."""
        try:
            return int(await self.redis.eval(_INCR_WITH_EXPIRY, 1, key, ex))
        except Exception as e:
            logger.error(f"Redis incr_with_expiry error for key {key}: {e}")
            return None

    async def decr(self, key: str) -> Optional[int]:
        try:
            return int(await self.redis.decr(key))
        except Exception as e:
            logger.error(f"Redis decr error for key {key}: {e}")
            return None

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        """Set JSON value in Redis."""
        try:
            await self.redis.set(key, json.dumps(value), ex=ex)
            return True
        except Exception as e:
            logger.error(f"Redis set_json error for key {key}: {e}")
            return False

    async def get_json(self, key: str) -> Optional[Any]:
        """Get JSON value from Redis."""
        try:
            value = await self.redis.get(key)
            if value:
                return json.loads(value.decode("utf-8"))
            return None
        except Exception as e:
            logger.error(f"Redis get_json error for key {key}: {e}")
            return None

    async def exists(self, key: str) -> bool:
        """Check if key exists in Redis."""
        try:
            return bool(await self.redis.exists(key))
        except Exception as e:
            logger.error(f"Redis exists error for key {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete key from Redis."""
        try:
            return bool(await self.redis.delete(key))
        except Exception as e:
            logger.error(f"Redis delete error for key {key}: {e}")
            return False

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.error(f"Redis ping error: {e}")
            return False

    async def close(self):
        """Close Redis connection."""
        await self.redis.aclose()


# Global Redis client instance
redis_client = RedisClient()


async def test_redis_connection() -> bool:
    """Test Redis connection."""
    if await redis_client.ping():
        logger.info("Redis connection test successful")
        return True
    logger.error("Redis connection test failed")
    return False


async def close_redis():
    """Close Redis connections."""
    await redis_client.close()
    await redis_pool.disconnect()
    logger.info("Redis connections closed")
