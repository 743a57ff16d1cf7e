"""
Cache tests: in-memory backend expiry and eviction with a fake clock,
pattern invalidation, and the manager's failure swallowing.
"""
import pytest

from blog_api.cache import CacheManager, MemoryBackend


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class BrokenBackend:
    name = "broken"

    async def get(self, key):
        raise ConnectionError("down")

    async def set(self, key, value, ttl):
        raise ConnectionError("down")

    async def delete(self, key):
        raise ConnectionError("down")

    async def delete_pattern(self, pattern):
        raise ConnectionError("down")

    async def clear(self):
        raise ConnectionError("down")

    async def size(self):
        raise ConnectionError("down")

    async def close(self):
        raise ConnectionError("down")


@pytest.mark.asyncio
async def test_values_round_trip_as_json():
    cache = CacheManager(MemoryBackend())
    await cache.set("k", {"posts": [1, 2], "page": 1}, ttl=60)
    assert await cache.get("k") == {"posts": [1, 2], "page": 1}


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = CacheManager(MemoryBackend(clock=clock))
    await cache.set("k", "v", ttl=10)
    await cache.set("forever", "v", ttl=None)

    clock.now += 9.9
    assert await cache.get("k") == "v"
    clock.now += 0.2
    assert await cache.get("k") is None
    assert await cache.get("forever") == "v"


@pytest.mark.asyncio
async def test_oldest_entry_is_evicted_when_full():
    backend = MemoryBackend(max_entries=2)
    cache = CacheManager(backend)
    await cache.set("a", 1, ttl=None)
    await cache.set("b", 2, ttl=None)
    await cache.set("a", 10, ttl=None)
    await cache.set("c", 3, ttl=None)

    assert await cache.get("a") is None
    assert await cache.get("b") == 2
    assert await cache.get("c") == 3
    assert await backend.size() == 2


@pytest.mark.asyncio
async def test_pattern_delete_respects_separators():
    cache = CacheManager(MemoryBackend())
    for key in ("comments:1:tree", "comments:12:tree", "comments:all", "posts:list:published:1:5"):
        await cache.set(key, 1, ttl=None)

    await cache.invalidate_comments(1)

    assert await cache.get("comments:1:tree") is None
    assert await cache.get("comments:all") is None
    assert await cache.get("comments:12:tree") == 1
    assert await cache.get("posts:list:published:1:5") == 1


@pytest.mark.asyncio
async def test_post_invalidation_clears_derived_families():
    cache = CacheManager(MemoryBackend())
    keys = ("posts:list:all:1:5", "post:hello", "top-posts", "search:posts:x", "tags:popular:10", "dashboard:stats")
    for key in keys:
        await cache.set(key, 1, ttl=None)
    await cache.set("users:list:1:20:", 1, ttl=None)

    await cache.invalidate_posts()

    for key in keys:
        assert await cache.get(key) is None
    assert await cache.get("users:list:1:20:") == 1


@pytest.mark.asyncio
async def test_cached_calls_producer_once_and_skips_none():
    cache = CacheManager(MemoryBackend())
    calls = []

    async def produce():
        calls.append(1)
        return {"n": len(calls)}

    assert await cache.cached("k", produce, ttl=60) == {"n": 1}
    assert await cache.cached("k", produce, ttl=60) == {"n": 1}
    assert len(calls) == 1

    async def nothing():
        return None

    await cache.cached("empty", nothing, ttl=60)
    assert await cache.get("empty") is None


@pytest.mark.asyncio
async def test_backend_failures_are_swallowed():
    cache = CacheManager(BrokenBackend())

    await cache.set("k", 1, ttl=5)
    assert await cache.get("k") is None
    await cache.delete("k")
    await cache.invalidate_posts()
    await cache.clear()
    await cache.close()

    async def produce():
        return "fresh"

    assert await cache.cached("k", produce, ttl=5) == "fresh"
    stats = await cache.stats()
    assert stats["backend"] == "broken"
    assert stats["size"] is None
    assert stats["misses"] == 2


@pytest.mark.asyncio
async def test_stats_hit_rate():
    cache = CacheManager(MemoryBackend())
    await cache.set("k", 1, ttl=None)
    await cache.get("k")
    await cache.get("missing")

    stats = await cache.stats()
    assert stats == {"backend": "memory", "size": 1, "hits": 1, "misses": 1, "hit_rate": 50.0}
