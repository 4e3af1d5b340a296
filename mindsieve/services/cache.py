"""Caching backends for the query enhancer.

The cache is an optimization only: every backend logs and swallows its own
errors, and a miss is always a valid answer.
"""

import json
import logging
import hashlib
import time
from typing import Any, Optional, Dict
from dataclasses import dataclass

import redis.asyncio as redis

from mindsieve.config import CacheConfig, RedisConfig, get_settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached, serialized value with its expiry time."""
    value: str
    expires_at: float


class MemoryCache:
    """In-process TTL cache.

    Shared by all requests in the process. Expired entries are evicted on
    read and on every write, so size is bounded by the TTL rather than an
    explicit capacity. No lock is taken: all access happens on the event loop
    thread.
    """

    def __init__(self, clock=time.monotonic):
        self._entries: Dict[str, CacheEntry] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_expired(self, now: float):
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return json.loads(entry.value)

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        now = self._clock()
        self._evict_expired(now)
        self._entries[key] = CacheEntry(value=json.dumps(value), expires_at=now + ttl)
        return True

    async def close(self):
        self._entries.clear()


class RedisCache:
    """Enhancer cache shared by every process, stored in Redis.

    Keys are namespaced and hashed; values are JSON with a ``SETEX`` expiry.
    """

    NAMESPACE = "enhancer:"

    def __init__(self, config: Optional[RedisConfig] = None, client: Optional["redis.Redis"] = None):
        self.config = config or get_settings().cache.redis
        self._client = client

    def _redis(self) -> "redis.Redis":
        if self._client is None:
            logger.info(f"Opening Redis enhancer cache at {self.config.url}")
            self._client = redis.from_url(self.config.url)
        return self._client

    def _key(self, key: str) -> str:
        return self.NAMESPACE + hashlib.md5(key.encode("utf-8")).hexdigest()

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis().get(self._key(key))
        except Exception as e:
            logger.warning(f"Redis read failed for enhancer cache: {e}")
            return None
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            await self._redis().setex(self._key(key), ttl, json.dumps(value))
        except Exception as e:
            logger.warning(f"Redis write failed for enhancer cache: {e}")
            return False
        return True

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_cache(config: Optional[CacheConfig] = None):
    """Build the enhancer cache backend named in the configuration."""
    config = config or get_settings().cache
    if config.backend == "redis":
        return RedisCache(config.redis)
    if config.backend != "memory":
        raise ValueError(f"Unknown cache backend: {config.backend}")
    return MemoryCache()
