# backend/store.py
"""
Key-value backing for cache entries and job status records.

RedisStore is used when REDIS_URL is configured; MemoryStore keeps the same
contract inside the process for single-instance runs and tests.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _alive(self, key: str, now: float) -> bool:
        item = self._data.get(key)
        if item is None:
            return False
        _, expires_at = item
        if expires_at is not None and now >= expires_at:
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> Optional[str]:
        if not self._alive(key, time.time()):
            return None
        return self._data[key][0]

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = time.time() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, prefix: str) -> List[str]:
        now = time.time()
        return [k for k in list(self._data) if k.startswith(prefix) and self._alive(k, now)]


class RedisStore(KeyValueStore):
    def __init__(self, url: str, socket_timeout: float = 5.0) -> None:
        self.url = url
        self._client: redis.Redis = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis GET {key} failed: {e}") from e

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        # Redis rejects a zero expiry; callers keep their own expiry timestamp
        ex = max(1, math.ceil(ttl)) if ttl is not None else None
        try:
            await self._client.set(key, value, ex=ex)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis SET {key} failed: {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._client.delete(*keys)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis DEL failed: {e}") from e

    async def keys(self, prefix: str) -> List[str]:
        try:
            return [k async for k in self._client.scan_iter(match=f"{prefix}*", count=500)]
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis SCAN {prefix}* failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError, asyncio.TimeoutError):
            return False

    async def close(self) -> None:
        await self._client.aclose()


def create_store(redis_url: Optional[str]) -> KeyValueStore:
    if redis_url:
        logger.info("Using Redis store at %s", redis_url)
        return RedisStore(redis_url)
    logger.info("REDIS_URL not set, using in-process store")
    return MemoryStore()
