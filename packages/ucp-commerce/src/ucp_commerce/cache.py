"""Caching layer with Redis support and in-memory fallback.

Backs the short-lived state of the server: the per-shop profile document and
pending backend registrations. Values are JSON strings with a TTL.
"""
from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value in cache with optional TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key from cache."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix."""

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value, default=str), ttl)

    async def close(self) -> None:
        return None


class InMemoryCache(CacheBackend):
    """In-memory cache for development and tests."""

    def __init__(self, clock=time.time):
        self._store: Dict[str, tuple[str, Optional[float]]] = {}  # key -> (value, expires_at)
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        if key not in self._store:
            return None
        value, expires_at = self._store[key]
        if expires_at and self._clock() > expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        expires_at = self._clock() + ttl if ttl else None
        self._store[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> bool:
        if key in self._store:
            del self._store[key]
            return True
        return False

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._store if k.startswith(prefix)]
        for key in keys:
            del self._store[key]
        return len(keys)


class RedisCache(CacheBackend):
    """Redis cache backend."""

    def __init__(self, url: str):
        self._url = url
        self._client = None

    async def _get_client(self):
        """Lazy initialization of Redis client."""
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        try:
            client = await self._get_client()
            return await client.get(key)
        except Exception as e:
            logger.error(f"Redis get error: {e}")
            return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        try:
            client = await self._get_client()
            if ttl:
                await client.setex(key, ttl, value)
            else:
                await client.set(key, value)
            return True
        except Exception as e:
            logger.error(f"Redis set error: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            result = await client.delete(key)
            return result > 0
        except Exception as e:
            logger.error(f"Redis delete error: {e}")
            return False

    async def delete_prefix(self, prefix: str) -> int:
        try:
            client = await self._get_client()
            count = 0
            async for key in client.scan_iter(match=f"{prefix}*"):
                count += await client.delete(key)
            return count
        except Exception as e:
            logger.error(f"Redis delete_prefix error: {e}")
            return 0

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.close()
            self._client = None


def create_cache(redis_url: Optional[str] = None) -> CacheBackend:
    """Pick the cache backend for the configured URL."""
    if redis_url:
        logger.info("Using Redis cache backend")
        return RedisCache(redis_url)
    logger.info("Using in-memory cache (no Redis URL provided)")
    return InMemoryCache()
