"""
Cache backends: in-process dictionary or Redis
"""
import asyncio
import copy
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis


logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Key/value store with per-entry TTL; ``None`` reads as a miss"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    async def close(self) -> None:
        pass


class MemoryCacheBackend(CacheBackend):
    """Dictionary backend for single-process deployments and tests"""

    def __init__(self, clock: Callable[[], float] = time.monotonic, prune_threshold: int = 10000):
        self.entries: Dict[str, Tuple[float, Any]] = {}
        self.clock = clock
        # expired entries are swept once the dict grows past this size
        self.prune_threshold = prune_threshold
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self.clock():
            async with self._lock:
                current = self.entries.get(key)
                if current is not None and current[0] <= self.clock():
                    del self.entries[key]
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        async with self._lock:
            now = self.clock()
            self.entries[key] = (now + ttl_seconds, copy.deepcopy(value))
            if len(self.entries) > self.prune_threshold:
                self._prune(now)

    def _prune(self, now: float):
        for key in [k for k, (expires_at, _) in self.entries.items() if expires_at <= now]:
            del self.entries[key]

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.entries.pop(key, None) is not None

    async def close(self) -> None:
        self.entries.clear()


class RedisCacheBackend(CacheBackend):
    """Redis backend; values are stored as JSON with SETEX"""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and not url:
            raise ValueError("RedisCacheBackend needs a url or a client")
        self.url = url
        self.client = client or redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None
        return json.loads(value) if value is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.client.setex(key, ttl_seconds, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.warning(f"Cache set failed for {key}: {e}")

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(key))
        except redis.RedisError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("Redis cache connections closed")


def create_cache_backend(redis_url: Optional[str] = None) -> CacheBackend:
    if redis_url:
        logger.info("Using Redis cache backend")
        return RedisCacheBackend(redis_url)
    logger.info("Using in-memory cache backend")
    return MemoryCacheBackend()
