import pytest

from backend.cache import CACHE_PREFIX, DEFAULT_QUALITY, CacheStore, tags_for
from backend.errors import CacheUnavailable
from backend.model import GeneratedImage, GenerationResult, StylePreset
from backend.store import KeyValueStore, MemoryStore

from conftest import BrokenStore, make_request, png_bytes


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_result(request_id: str = "r1", provider: str = "fake") -> GenerationResult:
    return GenerationResult(
        request_id=request_id,
        image=GeneratedImage(data=png_bytes(), width=64, height=48),
        provider=provider,
        model="fake-model",
        cost=0.01,
    )


class TestLookupAndPut:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self) -> None:
        cache = CacheStore(MemoryStore())
        assert await cache.lookup("fp") is None

        await cache.put("fp", make_result())
        entry = await cache.lookup("fp")
        assert entry is not None
        assert entry.provider == "fake"
        assert entry.image.data == png_bytes()
        assert entry.quality == DEFAULT_QUALITY

    @pytest.mark.asyncio
    async def test_hit_count_and_last_accessed_update(self) -> None:
        clock = FakeClock()
        cache = CacheStore(MemoryStore(), clock=clock)
        await cache.put("fp", make_result())

        clock.now += 5
        await cache.lookup("fp")
        clock.now += 5
        entry = await cache.lookup("fp")
        assert entry.hit_count == 2
        assert entry.last_accessed == clock.now

    @pytest.mark.asyncio
    async def test_put_is_idempotent_per_fingerprint(self) -> None:
        cache = CacheStore(MemoryStore())
        await cache.put("fp", make_result("a"))
        await cache.put("fp", make_result("b"))
        assert (await cache.stats()).entry_count == 1

    @pytest.mark.asyncio
    async def test_result_without_image_is_not_cached(self) -> None:
        cache = CacheStore(MemoryStore())
        result = GenerationResult(request_id="r", status="failed", provider="fake", model="m")
        assert await cache.put("fp", result) is None
        assert await cache.lookup("fp") is None

    @pytest.mark.asyncio
    async def test_entries_are_stored_under_prefix(self) -> None:
        store = MemoryStore()
        cache = CacheStore(store)
        await cache.put("abc", make_result())
        assert await store.keys(CACHE_PREFIX) == [f"{CACHE_PREFIX}abc"]

    @pytest.mark.asyncio
    async def test_to_result_marks_cache_hit(self) -> None:
        cache = CacheStore(MemoryStore())
        await cache.put("fp", make_result())
        request = make_request(request_id="new-request")
        result = cache.to_result(await cache.lookup("fp"), request)
        assert result.cache_hit is True
        assert result.request_id == "new-request"
        assert result.cost == 0.0
        assert result.provider == "fake"


class TestExpiry:
    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self) -> None:
        clock = FakeClock()
        cache = CacheStore(MemoryStore(), clock=clock)
        await cache.put("fp", make_result(), ttl=60)

        clock.now += 59
        assert await cache.lookup("fp") is not None
        clock.now += 1
        assert await cache.lookup("fp") is None

    @pytest.mark.asyncio
    async def test_zero_ttl_is_never_served(self) -> None:
        cache = CacheStore(MemoryStore(), clock=FakeClock())
        await cache.put("fp", make_result(), ttl=0)
        assert await cache.lookup("fp") is None

    @pytest.mark.asyncio
    async def test_sweep_removes_expired(self) -> None:
        clock = FakeClock()
        cache = CacheStore(MemoryStore(), clock=clock)
        await cache.put("old", make_result(), ttl=10)
        await cache.put("new", make_result(), ttl=1000)

        clock.now += 20
        assert await cache.sweep() == 1
        assert (await cache.stats()).entry_count == 1


class TestEviction:
    @pytest.mark.asyncio
    async def test_least_recently_used_is_evicted(self) -> None:
        clock = FakeClock()
        cache = CacheStore(MemoryStore(), capacity=2, clock=clock)
        await cache.put("a", make_result())
        clock.now += 1
        await cache.put("b", make_result())
        clock.now += 1
        await cache.lookup("a")
        clock.now += 1

        await cache.put("c", make_result())
        assert await cache.lookup("b") is None
        assert await cache.lookup("a") is not None
        assert await cache.lookup("c") is not None

    @pytest.mark.asyncio
    async def test_lower_hit_count_breaks_ties(self) -> None:
        clock = FakeClock()
        cache = CacheStore(MemoryStore(), capacity=2, clock=clock)
        await cache.put("a", make_result())
        await cache.put("b", make_result())
        await cache.lookup("a")
        await cache.lookup("b")
        await cache.lookup("b")

        await cache.put("c", make_result())
        assert await cache.lookup("a") is None
        assert await cache.lookup("b") is not None

    @pytest.mark.asyncio
    async def test_expired_entries_go_before_live_ones(self) -> None:
        clock = FakeClock()
        cache = CacheStore(MemoryStore(), capacity=2, clock=clock)
        await cache.put("short", make_result(), ttl=5)
        await cache.put("long", make_result(), ttl=1000)
        clock.now += 10

        await cache.put("c", make_result())
        assert await cache.lookup("long") is not None
        assert await cache.lookup("c") is not None

    @pytest.mark.asyncio
    async def test_overwrite_does_not_evict(self) -> None:
        cache = CacheStore(MemoryStore(), capacity=2, clock=FakeClock())
        await cache.put("a", make_result())
        await cache.put("b", make_result())
        await cache.put("a", make_result())
        assert (await cache.stats()).entry_count == 2


class TestTagsAndStats:
    def test_tags_describe_request(self) -> None:
        style = StylePreset(id="anime")
        tags = tags_for(make_request(provider="replicate", style=style, width=64, height=48))
        assert "provider:replicate" in tags
        assert "style:anime" in tags
        assert "size:64x48" in tags

    @pytest.mark.asyncio
    async def test_invalidate_by_tag(self) -> None:
        cache = CacheStore(MemoryStore())
        await cache.put("a", make_result(), tags=["provider:replicate", "style:anime"])
        await cache.put("b", make_result(), tags=["provider:openai"])

        assert await cache.invalidate(["style:anime"]) == 1
        assert await cache.lookup("a") is None
        assert await cache.lookup("b") is not None

    @pytest.mark.asyncio
    async def test_invalidate_with_no_tags_removes_nothing(self) -> None:
        cache = CacheStore(MemoryStore())
        await cache.put("a", make_result(), tags=["x"])
        assert await cache.invalidate([]) == 0

    @pytest.mark.asyncio
    async def test_stats(self) -> None:
        cache = CacheStore(MemoryStore())
        await cache.put("a", make_result())
        await cache.lookup("a")
        await cache.lookup("missing")

        stats = await cache.stats()
        assert stats.entry_count == 1
        assert stats.total_hits == 1
        assert stats.hit_rate == pytest.approx(0.5)
        assert stats.average_quality == DEFAULT_QUALITY


class TestStoreFailure:
    @pytest.mark.asyncio
    async def test_store_errors_surface_as_cache_unavailable(self) -> None:
        cache = CacheStore(BrokenStore())
        with pytest.raises(CacheUnavailable):
            await cache.lookup("fp")
        with pytest.raises(CacheUnavailable):
            await cache.put("fp", make_result())

    def test_store_interface_cannot_be_instantiated(self) -> None:
        with pytest.raises(TypeError):
            KeyValueStore()
