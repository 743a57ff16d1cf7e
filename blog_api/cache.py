import json
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

import redis.asyncio as redis

from blog_api.config import Settings

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    name: str

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int | None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def clear(self) -> None: ...

    async def size(self) -> int: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class RedisBackend:
    """Remote backend; pattern deletes enumerate keys server-side with SCAN."""

    name = "redis"

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl: int | None) -> None:
        await self._redis.set(key, value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        keys: list[str] = []
        async for key in self._redis.scan_iter(match=pattern):
            keys.append(key)
        if keys:
            await self._redis.delete(*keys)
        return len(keys)

    async def clear(self) -> None:
        await self._redis.flushdb()

    async def size(self) -> int:
        return await self._redis.dbsize()

    async def close(self) -> None:
        await self._redis.aclose()


class MemoryBackend:
    """
    Bounded in-process map.

    When full, inserting a new key evicts the oldest-inserted entry (dict
    iteration order), which is a coarse bound rather than LRU. Expired
    entries are dropped lazily on read.

    Pattern deletion is approximated: the ``*`` wildcards are removed and
    every key containing the remainder as a substring is deleted. Key
    schemes should end prefixes with a separator (``comments:12:``) so
    that ``comments:1:*`` cannot match them.
    """

    name = "memory"

    def __init__(self, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._store: dict[str, tuple[float | None, str]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: int | None) -> None:
        if key not in self._store and len(self._store) >= self.max_entries:
            oldest = next(iter(self._store))
            del self._store[oldest]
        expires_at = self._clock() + ttl if ttl is not None else None
        self._store[key] = (expires_at, value)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        needle = pattern.replace("*", "")
        doomed = [key for key in self._store if needle in key]
        for key in doomed:
            del self._store[key]
        return len(doomed)

    async def clear(self) -> None:
        self._store.clear()

    async def size(self) -> int:
        return len(self._store)

    async def close(self) -> None:
        self._store.clear()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class CacheManager:
    """
    Read-through cache in front of a swappable backend.

    Every public method swallows backend failures: reads turn into misses
    and writes into no-ops, so a cache outage never fails the request it
    was meant to speed up.
    """

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend
        self._hits: int = 0
        self._misses: int = 0

    # ------------------------------------------------------------------
    # Core cache operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        try:
            data = await self.backend.get(key)
        except Exception as exc:
            logger.warning("Cache GET error for key=%r: %s", key, exc)
            self._misses += 1
            return None
        if data is None:
            self._misses += 1
            return None
        try:
            value = json.loads(data)
        except ValueError as exc:
            logger.warning("Discarding undecodable cache entry %r: %s", key, exc)
            self._misses += 1
            return None
        self._hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            serialised = json.dumps(value, default=str)
            await self.backend.set(key, serialised, ttl)
        except Exception as exc:
            logger.warning("Cache SET error for key=%r: %s", key, exc)

    async def delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as exc:
            logger.warning("Cache DELETE error for key=%r: %s", key, exc)

    async def delete_pattern(self, pattern: str) -> None:
        try:
            removed = await self.backend.delete_pattern(pattern)
            if removed:
                logger.debug("Cache invalidated %d key(s) matching %r", removed, pattern)
        except Exception as exc:
            logger.warning("Cache DELETE_PATTERN error for pattern=%r: %s", pattern, exc)

    async def clear(self) -> None:
        try:
            await self.backend.clear()
        except Exception as exc:
            logger.warning("Cache CLEAR error: %s", exc)

    async def cached(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: int | None,
        should_cache: Callable[[Any], bool] = lambda value: value is not None,
    ) -> Any:
        """
        Return the cached value for *key*, or await *producer*, store its
        result under *ttl* when *should_cache* approves it, and return it.

        Exceptions raised by *producer* propagate and nothing is stored.
        """
        hit = await self.get(key)
        if hit is not None:
            logger.debug("Cache HIT: %s", key)
            return hit
        logger.debug("Cache MISS: %s", key)
        value = await producer()
        if should_cache(value):
            await self.set(key, value, ttl=ttl)
        return value

    # ------------------------------------------------------------------
    # Domain-level invalidation helpers
    # ------------------------------------------------------------------

    async def invalidate_posts(self) -> None:
        for pattern in ("posts:*", "post:*", "top-posts*", "search:*", "tags:*", "dashboard:*"):
            await self.delete_pattern(pattern)

    async def invalidate_comments(self, post_id: int | None = None) -> None:
        if post_id is not None:
            await self.delete_pattern(f"comments:{post_id}:*")
        await self.delete_pattern("comments:all*")
        await self.delete_pattern("search:*")
        await self.invalidate_dashboard()

    async def invalidate_tags(self) -> None:
        await self.delete_pattern("tags:*")
        await self.delete_pattern("posts:tag:*")
        await self.delete_pattern("search:*")
        await self.invalidate_dashboard()

    async def invalidate_users(self) -> None:
        await self.delete_pattern("users:*")
        await self.invalidate_dashboard()

    async def invalidate_dashboard(self) -> None:
        await self.delete_pattern("dashboard:*")

    # ------------------------------------------------------------------
    # Lifecycle / observability
    # ------------------------------------------------------------------

    async def close(self) -> None:
        try:
            await self.backend.close()
        except Exception as exc:
            logger.warning("Cache close error: %s", exc)

    async def stats(self) -> dict:
        try:
            size = await self.backend.size()
        except Exception:
            size = None
        total = self._hits + self._misses
        return {
            "backend": self.backend.name,
            "size": size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


async def create_cache(settings: Settings) -> CacheManager:
    """
    Build the process-wide cache at startup.

    ``CACHE_BACKEND=redis`` pings the server first and falls back to the
    in-process map when it is unreachable.
    """
    memory = MemoryBackend(max_entries=settings.MEMORY_CACHE_MAX_ENTRIES)
    if settings.CACHE_BACKEND != "redis":
        logger.info("Using in-memory cache (max %d entries)", settings.MEMORY_CACHE_MAX_ENTRIES)
        return CacheManager(memory)

    client = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("Redis unavailable, falling back to memory cache: %s", exc)
        await client.aclose()
        return CacheManager(memory)
    logger.info("Redis cache connected: %s", settings.REDIS_URL)
    return CacheManager(RedisBackend(client))
