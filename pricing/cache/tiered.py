"""Two-tier cache: process-local map in front of a shared key/value store."""

import asyncio
import json
import threading
import time
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

import structlog

from ..core.errors import InvalidArgumentError
from ..core.interfaces import SharedCache
from .circuit import CircuitBreaker

logger = structlog.get_logger(__name__)

# Marks a shared-tier call that was skipped or failed.
_UNAVAILABLE = object()

# Entries checked between yields while sweeping.
_SWEEP_BATCH = 500


class CacheNamespace(str, Enum):
    """Cache key namespaces."""

    TOKEN = "token"
    PAIR = "pair"
    USER = "user"
    METRICS = "metrics"
    CHART = "chart"
    VOLUME = "volume"
    TVL = "tvl"
    PRICE = "price"


class CacheLevel(str, Enum):
    """Tiers addressed by ``clear_all``."""

    LOCAL = "local"
    SHARED = "shared"
    ALL = "all"


_COUNTERS = (
    "local_hits",
    "local_misses",
    "shared_hits",
    "shared_misses",
    "local_sets",
    "shared_sets",
    "local_invalidations",
    "shared_invalidations",
    "prefix_invalidations",
    "shared_errors",
)


def make_key(
    namespace: CacheNamespace | str, entity_id: str, sub_key: str | None = None
) -> str:
    """Build ``namespace:id[:sub_key]``."""
    ns = CacheNamespace(namespace)
    key = f"{ns.value}:{entity_id}"
    if sub_key:
        key = f"{key}:{sub_key}"
    return key


class TieredCache:
    """Read-through/write-through cache over a local map and a shared store.

    The local tier answers without touching the shared tier while an entry is
    live. Shared-tier failures are logged and degrade to local-only operation;
    they never reach the caller. Values must be JSON-serializable to reach the
    shared tier, and ``None`` is never cached since it denotes a miss. A
    shared hit is backfilled locally only for the time the writer's TTL has
    left, capped by the namespace default.

    Concurrent writers to the same key are last-write-wins.
    """

    def __init__(
        self,
        shared: SharedCache | None = None,
        ttl_volatile: int = 10,
        ttl_standard: int = 300,
        ttl_extended: int = 1800,
        sweep_interval: float = 60.0,
        breaker: CircuitBreaker | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize tiered cache.

        Args:
            shared: Shared backend, or None for local-only operation
            ttl_volatile: TTL for live prices
            ttl_standard: TTL for token, pair, metrics, volume and TVL data
            ttl_extended: TTL for chart and user data
            sweep_interval: Minimum seconds between expired-entry sweeps
            breaker: Circuit breaker guarding the shared tier
            now_fn: Optional function to get current timestamp (for testing)
        """
        self._shared = shared
        self._breaker = breaker or CircuitBreaker()
        self._now_fn = now_fn or time.time
        self.sweep_interval = sweep_interval

        self._ttls = {
            CacheNamespace.PRICE: ttl_volatile,
            CacheNamespace.TOKEN: ttl_standard,
            CacheNamespace.PAIR: ttl_standard,
            CacheNamespace.METRICS: ttl_standard,
            CacheNamespace.VOLUME: ttl_standard,
            CacheNamespace.TVL: ttl_standard,
            CacheNamespace.CHART: ttl_extended,
            CacheNamespace.USER: ttl_extended,
        }

        self._local: dict[str, tuple[Any, float]] = {}
        self._last_sweep = self._now_fn()
        self._sweep_task: asyncio.Task | None = None

        self._stats_lock = threading.Lock()
        self._stats = dict.fromkeys(_COUNTERS, 0)

        logger.info(
            "Tiered cache initialized",
            shared="enabled" if shared is not None else "disabled",
            sweep_interval=sweep_interval,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        shared: SharedCache | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> "TieredCache":
        """Build a cache from ``AppSettings``."""
        return cls(
            shared=shared,
            ttl_volatile=settings.ttl_volatile_seconds,
            ttl_standard=settings.ttl_standard_seconds,
            ttl_extended=settings.ttl_extended_seconds,
            sweep_interval=settings.cache_sweep_interval_seconds,
            breaker=breaker,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def default_ttl(self, namespace: CacheNamespace | str) -> int:
        """TTL used when a write does not pass one."""
        return self._ttls[CacheNamespace(namespace)]

    # Reads

    async def get(
        self,
        namespace: CacheNamespace | str,
        entity_id: str,
        sub_key: str | None = None,
    ) -> Any | None:
        """Get a value, returning None on a miss."""
        key = make_key(namespace, entity_id, sub_key)

        hit, value = self._local_get(key)
        if hit:
            self._count("local_hits")
            return value
        self._count("local_misses")

        raw = await self._shared_call("get", key)
        if raw is _UNAVAILABLE or raw is None:
            if raw is None:
                self._count("shared_misses")
            return None

        found, value, remaining = self._decode(key, raw)
        if not found:
            return None
        if remaining <= 0:
            self._count("shared_misses")
            return None

        self._count("shared_hits")
        self._local_set(key, value, min(remaining, self.default_ttl(namespace)))
        return value

    async def get_bulk(
        self,
        namespace: CacheNamespace | str,
        entity_ids: Iterable[str],
        sub_key: str | None = None,
    ) -> dict[str, Any]:
        """Get several values; the result only holds hits.

        Local misses are fetched from the shared tier in one multi-get.
        """
        results: dict[str, Any] = {}
        missing: list[tuple[str, str]] = []

        for entity_id in dict.fromkeys(entity_ids):
            key = make_key(namespace, entity_id, sub_key)
            hit, value = self._local_get(key)
            if hit:
                self._count("local_hits")
                results[entity_id] = value
            else:
                self._count("local_misses")
                missing.append((entity_id, key))

        if not missing:
            return results

        raws = await self._shared_call("mget", [key for _, key in missing])
        if raws is _UNAVAILABLE:
            return results

        ttl = self.default_ttl(namespace)
        for (entity_id, key), raw in zip(missing, raws, strict=False):
            if raw is None:
                self._count("shared_misses")
                continue
            found, value, remaining = self._decode(key, raw)
            if not found:
                continue
            if remaining <= 0:
                self._count("shared_misses")
                continue
            self._count("shared_hits")
            self._local_set(key, value, min(remaining, ttl))
            results[entity_id] = value

        return results

    # Writes

    async def set(
        self,
        namespace: CacheNamespace | str,
        entity_id: str,
        value: Any,
        ttl: int | None = None,
        sub_key: str | None = None,
    ) -> None:
        """Write a value to both tiers; the shared write is best effort."""
        if value is None:
            return

        key = make_key(namespace, entity_id, sub_key)
        ttl = self._resolve_ttl(namespace, ttl)

        self._local_set(key, value, ttl)
        self._count("local_sets")
        self._maybe_schedule_sweep()

        payload = self._encode(key, value, ttl)
        if payload is None:
            return
        result = await self._shared_call("set", key, payload, ttl)
        if result is not _UNAVAILABLE:
            self._count("shared_sets")

    async def set_bulk(
        self,
        namespace: CacheNamespace | str,
        items: dict[str, Any],
        ttl: int | None = None,
        sub_key: str | None = None,
    ) -> None:
        """Write several values; shared writes go out in one pipeline."""
        ttl = self._resolve_ttl(namespace, ttl)
        batch: list[tuple[str, str, int]] = []

        for entity_id, value in items.items():
            if value is None:
                continue
            key = make_key(namespace, entity_id, sub_key)
            self._local_set(key, value, ttl)
            self._count("local_sets")
            payload = self._encode(key, value, ttl)
            if payload is not None:
                batch.append((key, payload, ttl))

        self._maybe_schedule_sweep()

        if not batch:
            return
        result = await self._shared_call("pipeline_set", batch)
        if result is not _UNAVAILABLE:
            self._count("shared_sets", len(batch))

    # Invalidation

    async def invalidate(
        self,
        namespace: CacheNamespace | str,
        entity_id: str,
        sub_key: str | None = None,
    ) -> None:
        """Remove one entry from both tiers."""
        await self._invalidate_keys([make_key(namespace, entity_id, sub_key)])

    async def invalidate_bulk(
        self,
        namespace: CacheNamespace | str,
        entity_ids: Iterable[str],
        sub_key: str | None = None,
    ) -> None:
        """Remove several entries from both tiers."""
        keys = [make_key(namespace, entity_id, sub_key) for entity_id in entity_ids]
        if keys:
            await self._invalidate_keys(keys)

    async def invalidate_by_prefix(
        self, namespace: CacheNamespace | str, prefix: str = ""
    ) -> int:
        """Remove every entry under ``namespace:prefix``.

        Returns:
            Number of local entries removed
        """
        key_prefix = f"{CacheNamespace(namespace).value}:{prefix}"

        removed = 0
        for key in list(self._local):
            if key.startswith(key_prefix):
                if self._local.pop(key, None) is not None:
                    removed += 1
        self._count("local_invalidations", removed)
        self._count("prefix_invalidations")

        await self._delete_shared_pattern(f"{key_prefix}*")

        logger.debug(
            "Cache prefix invalidated", prefix=key_prefix, local_removed=removed
        )
        return removed

    async def clear_all(self, level: CacheLevel | str = CacheLevel.ALL) -> None:
        """Clear the local tier, the shared tier, or both.

        Only keys in known namespaces are removed from the shared tier.
        """
        level = CacheLevel(level)

        if level in (CacheLevel.LOCAL, CacheLevel.ALL):
            count = len(self._local)
            self._local.clear()
            self._count("local_invalidations", count)

        if level in (CacheLevel.SHARED, CacheLevel.ALL):
            for namespace in CacheNamespace:
                await self._delete_shared_pattern(f"{namespace.value}:*")

        logger.info("Cache cleared", level=level.value)

    # Maintenance and stats

    async def sweep_expired(self) -> int:
        """Remove expired local entries, yielding to the loop between batches.

        Returns:
            Number of entries removed
        """
        now = self._now_fn()
        removed = 0
        snapshot = list(self._local.items())
        for index, (key, entry) in enumerate(snapshot, start=1):
            if entry[1] <= now and self._local.get(key) is entry:
                del self._local[key]
                removed += 1
            if index % _SWEEP_BATCH == 0:
                await asyncio.sleep(0)

        if removed:
            logger.debug("Expired cache entries swept", removed=removed)
        return removed

    def stats(self) -> dict[str, Any]:
        """Snapshot of counters with derived hit ratios."""
        with self._stats_lock:
            snapshot: dict[str, Any] = dict(self._stats)

        local_total = snapshot["local_hits"] + snapshot["local_misses"]
        shared_total = snapshot["shared_hits"] + snapshot["shared_misses"]
        snapshot["local_hit_ratio"] = (
            snapshot["local_hits"] / local_total if local_total else 0.0
        )
        snapshot["shared_hit_ratio"] = (
            snapshot["shared_hits"] / shared_total if shared_total else 0.0
        )
        snapshot["local_size"] = len(self._local)
        snapshot["shared_state"] = (
            self._breaker.state.value if self._shared is not None else "disabled"
        )
        return snapshot

    def reset_stats(self) -> None:
        """Zero all counters."""
        with self._stats_lock:
            self._stats = dict.fromkeys(_COUNTERS, 0)

    async def close(self) -> None:
        """Stop a pending sweep."""
        if self._sweep_task is not None and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

    # Internals

    def _count(self, name: str, amount: int = 1) -> None:
        if amount:
            with self._stats_lock:
                self._stats[name] += amount

    def _local_get(self, key: str) -> tuple[bool, Any]:
        entry = self._local.get(key)
        if entry is None:
            return False, None
        value, expiry = entry
        if expiry <= self._now_fn():
            if self._local.get(key) is entry:
                del self._local[key]
            return False, None
        return True, value

    def _local_set(self, key: str, value: Any, ttl: float) -> None:
        self._local[key] = (value, self._now_fn() + ttl)

    def _maybe_schedule_sweep(self) -> None:
        now = self._now_fn()
        if now - self._last_sweep < self.sweep_interval:
            return
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._last_sweep = now
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweep_task = loop.create_task(self.sweep_expired())

    def _resolve_ttl(self, namespace: CacheNamespace | str, ttl: int | None) -> int:
        if ttl is None:
            return self.default_ttl(namespace)
        if ttl <= 0:
            raise InvalidArgumentError(f"Cache TTL must be positive, got {ttl!r}")
        return ttl

    def _encode(self, key: str, value: Any, ttl: int) -> str | None:
        # Shared payloads carry the writer's absolute expiry.
        try:
            return json.dumps({"v": value, "exp": self._now_fn() + ttl})
        except (TypeError, ValueError) as e:
            self._count("shared_errors")
            logger.warning("Cache value not serializable", key=key, error=str(e))
            return None

    def _decode(self, key: str, raw: str) -> tuple[bool, Any, float]:
        """Return ``(found, value, seconds_remaining)`` for a shared payload."""
        try:
            envelope = json.loads(raw)
            return True, envelope["v"], float(envelope["exp"]) - self._now_fn()
        except (TypeError, ValueError, KeyError) as e:
            self._count("shared_errors")
            logger.warning("Cache value not deserializable", key=key, error=str(e))
            return False, None, 0.0

    async def _invalidate_keys(self, keys: list[str]) -> None:
        removed = sum(1 for key in keys if self._local.pop(key, None) is not None)
        self._count("local_invalidations", removed)

        deleted = await self._shared_call("delete", keys)
        if deleted is not _UNAVAILABLE:
            self._count("shared_invalidations", deleted)

    async def _delete_shared_pattern(self, pattern: str) -> None:
        keys = await self._shared_call("scan", pattern)
        if keys is _UNAVAILABLE or not keys:
            return
        deleted = await self._shared_call("delete", keys)
        if deleted is not _UNAVAILABLE:
            self._count("shared_invalidations", deleted)

    async def _shared_call(self, operation: str, *args: Any) -> Any:
        if self._shared is None or not self._breaker.allow_request():
            return _UNAVAILABLE
        try:
            result = await getattr(self._shared, operation)(*args)
        except Exception as e:
            self._breaker.record_failure(e)
            self._count("shared_errors")
            logger.warning(
                "Shared cache operation failed",
                operation=operation,
                error=str(e),
            )
            return _UNAVAILABLE
        self._breaker.record_success()
        return result

