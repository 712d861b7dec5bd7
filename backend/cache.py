# backend/cache.py
"""
Result cache keyed by request fingerprint.

Entries live in a KeyValueStore under ``ai_cache:<fingerprint>``. Capacity
is enforced on insert: expired entries go first, then the least recently
used entry, ties broken by the lowest hit count.

All operations hold one asyncio lock. A lookup's hit-count write-back and
an eviction can therefore never interleave, so an evicted entry is never
written back.
"""

import asyncio
import logging
import time
from typing import Callable, Iterable, List, Optional

from pydantic import ValidationError

from .errors import CacheUnavailable, StoreUnavailable
from .model import CacheEntry, CacheStats, GenerationRequest, GenerationResult, RequestSummary
from .store import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_PREFIX = "ai_cache:"
DEFAULT_QUALITY = 85.0


def tags_for(request: GenerationRequest) -> List[str]:
    tags = [
        f"provider:{request.provider or 'auto'}",
        f"style:{request.style_preset.id if request.style_preset else 'none'}",
        f"size:{request.target_width}x{request.target_height}",
    ]
    if request.sketch.color_palette:
        tags.append(f"colors:{len(request.sketch.color_palette)}")
    return tags


class CacheStore:
    def __init__(
        self,
        store: KeyValueStore,
        capacity: int = 500,
        default_ttl: float = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._store = store
        self.capacity = capacity
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = asyncio.Lock()
        self._lookups = 0
        self._hits = 0

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"{CACHE_PREFIX}{fingerprint}"

    async def _read(self, key: str) -> Optional[CacheEntry]:
        raw = await self._store.get(key)
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Dropping unreadable cache entry %s", key)
            await self._store.delete(key)
            return None

    async def _write(self, entry: CacheEntry, now: float) -> None:
        ttl = max(0.0, entry.expires_at - now)
        await self._store.set(self._key(entry.fingerprint), entry.model_dump_json(), ttl=ttl)

    async def _entries(self) -> List[CacheEntry]:
        entries = []
        for key in await self._store.keys(CACHE_PREFIX):
            entry = await self._read(key)
            if entry is not None:
                entries.append(entry)
        return entries

    async def lookup(self, fingerprint: str) -> Optional[CacheEntry]:
        async with self._lock:
            try:
                now = self._clock()
                self._lookups += 1
                key = self._key(fingerprint)
                entry = await self._read(key)
                if entry is None:
                    return None
                if entry.is_expired(now):
                    await self._store.delete(key)
                    return None

                entry.hit_count += 1
                entry.last_accessed = now
                await self._write(entry, now)
                self._hits += 1
                return entry
            except StoreUnavailable as e:
                raise CacheUnavailable(str(e)) from e

    async def put(
        self,
        fingerprint: str,
        result: GenerationResult,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
        request: Optional[GenerationRequest] = None,
    ) -> Optional[CacheEntry]:
        if result.image is None or not result.image.data:
            return None
        ttl = self.default_ttl if ttl is None else ttl

        async with self._lock:
            try:
                now = self._clock()
                key = self._key(fingerprint)
                if await self._store.get(key) is None:
                    await self._make_room(now)

                entry = CacheEntry(
                    fingerprint=fingerprint,
                    image=result.image,
                    request=RequestSummary(
                        prompt=request.prompt if request else "",
                        style_preset=request.style_preset.id if request and request.style_preset else None,
                        parameters=request.params.model_dump() if request else result.parameters,
                    ),
                    provider=result.provider,
                    quality=result.quality if result.quality is not None else DEFAULT_QUALITY,
                    created_at=now,
                    last_accessed=now,
                    expires_at=now + ttl,
                    tags=sorted(set(tags)),
                )
                await self._write(entry, now)
                return entry
            except StoreUnavailable as e:
                raise CacheUnavailable(str(e)) from e

    async def _make_room(self, now: float) -> None:
        entries = await self._entries()
        live = []
        for entry in entries:
            if entry.is_expired(now):
                await self._store.delete(self._key(entry.fingerprint))
            else:
                live.append(entry)

        overflow = len(live) - self.capacity + 1
        if overflow <= 0:
            return
        live.sort(key=lambda e: (e.last_accessed, e.hit_count))
        for victim in live[:overflow]:
            logger.info(
                "Evicting cache entry %s (hits=%d)", victim.fingerprint[:12], victim.hit_count
            )
            await self._store.delete(self._key(victim.fingerprint))

    async def invalidate(self, tags: Iterable[str]) -> int:
        wanted = set(tags)
        if not wanted:
            return 0
        async with self._lock:
            try:
                removed = 0
                for entry in await self._entries():
                    if wanted.intersection(entry.tags):
                        removed += await self._store.delete(self._key(entry.fingerprint))
                return removed
            except StoreUnavailable as e:
                raise CacheUnavailable(str(e)) from e

    async def sweep(self) -> int:
        """Remove expired entries."""
        async with self._lock:
            try:
                now = self._clock()
                removed = 0
                for entry in await self._entries():
                    if entry.is_expired(now):
                        removed += await self._store.delete(self._key(entry.fingerprint))
                return removed
            except StoreUnavailable as e:
                raise CacheUnavailable(str(e)) from e

    async def stats(self) -> CacheStats:
        async with self._lock:
            try:
                now = self._clock()
                entries = [e for e in await self._entries() if not e.is_expired(now)]
            except StoreUnavailable as e:
                raise CacheUnavailable(str(e)) from e

        total_hits = sum(e.hit_count for e in entries)
        return CacheStats(
            entry_count=len(entries),
            hit_rate=self._hits / self._lookups if self._lookups else 0.0,
            total_hits=total_hits,
            average_quality=sum(e.quality for e in entries) / len(entries) if entries else 0.0,
        )

    def to_result(self, entry: CacheEntry, request: GenerationRequest, elapsed: float = 0.0) -> GenerationResult:
        return GenerationResult(
            request_id=request.id,
            status="completed",
            image=entry.image,
            provider=entry.provider,
            model="cached",
            parameters=request.params.model_dump(),
            processing_time=elapsed,
            cost=0.0,
            cache_hit=True,
            quality=entry.quality,
        )
