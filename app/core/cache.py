"""
Key-value cache used to keep computed permission sets between checks.

The permission engine depends on the CachePort protocol only. Two
implementations are provided:

- InMemoryCache: per-process dict, used in tests and when REDIS_URL is unset
- RedisCache: redis.asyncio client

Both swallow nothing: they raise on backend failures and callers decide
whether a failure matters. The engine treats every cache error as a miss.
"""
import fnmatch
import time
from typing import Optional, Protocol

import redis.asyncio as redis

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


class CachePort(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None:
        """Delete a key, or every key matching it when it contains '*'."""
        ...


def build_key(namespace: str, *parts: str) -> str:
    """Build a namespaced key: <prefix>:<namespace>:<part>:<part>..."""
    return ":".join([config.CACHE_KEY_PREFIX, namespace, *parts])


class InMemoryCache:
    """Dict-backed cache with per-key expiry."""

    def __init__(self):
        self._store: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        if "*" not in key:
            self._store.pop(key, None)
            return
        for existing in [k for k in self._store if fnmatch.fnmatchcase(k, key)]:
            self._store.pop(existing, None)

    def clear(self) -> None:
        self._store.clear()


class RedisCache:
    """Redis-backed cache. Pattern deletes use SCAN rather than KEYS."""

    def __init__(self, url: str):
        self._client = redis.from_url(url, decode_responses=True, max_connections=50)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.setex(key, ttl_seconds, value)

    async def delete(self, key: str) -> None:
        if "*" not in key:
            await self._client.delete(key)
            return
        batch = []
        async for existing in self._client.scan_iter(match=key, count=500):
            batch.append(existing)
            if len(batch) >= 500:
                await self._client.delete(*batch)
                batch = []
        if batch:
            await self._client.delete(*batch)

    async def ping(self) -> bool:
        return await self._client.ping()

    async def close(self) -> None:
        await self._client.aclose()


_cache: Optional[CachePort] = None


def get_cache() -> CachePort:
    """
    FastAPI dependency returning the process cache.

    Redis when REDIS_URL is configured, in-memory otherwise. Tests override
    this dependency with their own InMemoryCache.
    """
    global _cache
    if _cache is None:
        if config.REDIS_URL:
            log.info("Using Redis permission cache")
            _cache = RedisCache(config.REDIS_URL)
        else:
            log.warning("REDIS_URL not set, using in-process permission cache")
            _cache = InMemoryCache()
    return _cache


async def close_cache() -> None:
    global _cache
    if isinstance(_cache, RedisCache):
        await _cache.close()
    _cache = None
