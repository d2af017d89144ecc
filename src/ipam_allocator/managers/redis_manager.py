"""
Redis manager for the read-side caches of the allocator.

Redis never holds allocation state: it only caches utilization aggregates, so every
caller treats a Redis failure as a cache miss. The connection is created lazily on
first use and the process keeps running when Redis is absent.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from ipam_allocator.config import settings
from ipam_allocator.managers.logging_manager import get_logger

logger = get_logger(prefix="[RedisManager]")


class RedisManager:
    """
    Manages a single async Redis connection.

    Attributes:
        redis_url: The Redis connection URL.
        _redis: The cached Redis client instance.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis: Optional[redis_async.Redis] = None
        self.logger = logger

    async def get_redis(self) -> redis_async.Redis:
        """Get or create the Redis client."""
        if self._redis is None:
            self.logger.info("Creating async Redis client for %s", self.redis_url)
            self._redis = redis_async.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def set_with_expiry(self, key: str, value: Any, expiry: int) -> None:
        """
        Set a key-value pair with expiration time.

        Args:
            key: The Redis key
            value: The value to store (JSON serialized if not a string)
            expiry: Expiration time in seconds
        """
        redis_client = await self.get_redis()
        serialized_value = value if isinstance(value, str) else json.dumps(value, default=str)
        await redis_client.setex(key, expiry, serialized_value)
        self.logger.debug("Set key %s with expiry %d seconds", key, expiry)

    async def get(self, key: str) -> Any:
        """Get a value by key, JSON deserialized when possible."""
        redis_client = await self.get_redis()
        value = await redis_client.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        redis_client = await self.get_redis()
        await redis_client.delete(*keys)
        self.logger.debug("Deleted keys %s", keys)

    async def health_check(self) -> bool:
        try:
            redis_client = await self.get_redis()
            return bool(await redis_client.ping())
        except (RedisError, OSError) as e:
            self.logger.warning("Redis health check failed: %s", e)
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


redis_manager = RedisManager()
