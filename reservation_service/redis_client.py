"""
Redis caching utilities.

Only the advisory availability figure shown to shoppers is cached. Reserve
decisions never read from here.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from .config import get_settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client for caching. Every call is a no-op until connected."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or get_settings().redis_url
        self._client: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis."""
        self._client = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True
        )
        await self._client.ping()
        logger.info("Redis connected")

    async def disconnect(self):
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis disconnected")

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        if not self._client:
            return None
        value = await self._client.get(key)
        if value is not None:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = 3600):
        """Set value in cache with TTL."""
        if not self._client:
            return
        await self._client.setex(key, ttl, json.dumps(value))

    async def delete(self, key: str):
        """Delete key from cache."""
        if not self._client:
            return
        await self._client.delete(key)


# Cache key patterns
class CacheKeys:
    @staticmethod
    def availability(stock_key: str) -> str:
        return f"availability:{stock_key}"


class AvailabilityCache:
    """Short-lived cache of display availability, invalidated on every mutation."""

    def __init__(self, client: RedisClient, ttl_seconds: int = 5):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def get(self, stock_key: str) -> Optional[int]:
        try:
            value = await self.client.get(CacheKeys.availability(stock_key))
        except redis.RedisError as e:
            logger.warning(f"Availability cache read failed for {stock_key}: {e}")
            return None
        return int(value) if value is not None else None

    async def set(self, stock_key: str, available: int):
        try:
            await self.client.set(CacheKeys.availability(stock_key), available, ttl=self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"Availability cache write failed for {stock_key}: {e}")

    async def invalidate(self, stock_key: str):
        try:
            await self.client.delete(CacheKeys.availability(stock_key))
        except redis.RedisError as e:
            logger.warning(f"Availability cache invalidation failed for {stock_key}: {e}")
