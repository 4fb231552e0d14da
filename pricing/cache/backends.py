"""Shared cache backends."""

import fnmatch
import time
from collections.abc import Callable

import redis.asyncio as aioredis
import structlog

from ..core.interfaces import SharedCache

logger = structlog.get_logger(__name__)


class RedisSharedCache(SharedCache):
    """Redis-backed shared cache."""

    def __init__(
        self,
        redis_url: str | None = None,
        client: aioredis.Redis | None = None,
        scan_count: int = 1000,
    ) -> None:
        """Initialize Redis shared cache.

        Args:
            redis_url: Redis connection URL
            client: Optional pre-built client (takes precedence over the URL)
            scan_count: COUNT hint for SCAN iterations
        """
        if client is None and not redis_url:
            raise ValueError("Either redis_url or client is required")
        self.client = client or aioredis.from_url(redis_url, decode_responses=True)
        self.scan_count = scan_count
        logger.info("Redis shared cache initialized", redis_url=redis_url)

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def mget(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        return list(await self.client.mget(keys))

    async def pipeline_set(self, items: list[tuple[str, str, int]]) -> None:
        if not items:
            return
        async with self.client.pipeline(transaction=False) as pipe:
            for key, value, ttl in items:
                pipe.set(key, value, ex=ttl)
            await pipe.execute()

    async def scan(self, pattern: str) -> list[str]:
        return [
            key
            async for key in self.client.scan_iter(match=pattern, count=self.scan_count)
        ]

    async def delete(self, keys: list[str]) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self.client.aclose()
        logger.info("Redis shared cache closed")


class InMemorySharedCache(SharedCache):
    """Process-local stand-in for the shared tier (``memory://``)."""

    def __init__(self, now_fn: Callable[[], float] | None = None) -> None:
        """Initialize in-memory shared cache.

        Args:
            now_fn: Optional function to get current timestamp (for testing)
        """
        self._now_fn = now_fn or time.time
        self._data: dict[str, tuple[str, float]] = {}
        self.calls: dict[str, int] = {
            "get": 0,
            "set": 0,
            "mget": 0,
            "pipeline_set": 0,
            "scan": 0,
            "delete": 0,
        }

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expiry = item
        if expiry <= self._now_fn():
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> str | None:
        self.calls["get"] += 1
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.calls["set"] += 1
        self._data[key] = (value, self._now_fn() + ttl_seconds)

    async def mget(self, keys: list[str]) -> list[str | None]:
        self.calls["mget"] += 1
        return [self._live(key) for key in keys]

    async def pipeline_set(self, items: list[tuple[str, str, int]]) -> None:
        self.calls["pipeline_set"] += 1
        now = self._now_fn()
        for key, value, ttl in items:
            self._data[key] = (value, now + ttl)

    async def scan(self, pattern: str) -> list[str]:
        self.calls["scan"] += 1
        return [
            key
            for key in list(self._data)
            if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
        ]

    async def delete(self, keys: list[str]) -> int:
        self.calls["delete"] += 1
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def close(self) -> None:
        self._data.clear()


def create_shared_cache(url: str | None) -> SharedCache | None:
    """Build a shared cache backend from a URL; None means local-only."""
    if not url:
        logger.warning("Shared cache URL not provided, running local-only")
        return None
    if url.startswith("memory://"):
        logger.info("Using in-memory shared cache")
        return InMemorySharedCache()
    return RedisSharedCache(redis_url=url)
