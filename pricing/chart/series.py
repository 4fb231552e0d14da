"""Downsampled USD price series for charts."""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

import structlog

from ..cache.tiered import CacheNamespace, TieredCache
from ..core.errors import InvalidArgumentError
from ..core.interfaces import PairRepository, SnapshotRepository, TokenRepository
from ..core.types import ChartPoint, EntityKind, PairWithTokens, Token
from ..price.resolver import PriceResolver

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# timeframe -> (lookback seconds, max points)
TIMEFRAMES: dict[str, tuple[int, int]] = {
    "1h": (3600, 60),
    "1d": (86400, 96),
    "1w": (604800, 168),
    "1m": (2592000, 120),
    "1y": (31536000, 365),
}
DEFAULT_TIMEFRAME = "1d"

RECENT_BIASED_TIMEFRAMES = frozenset({"1h", "1d", "1w"})
FLAT_FILTERED_TIMEFRAMES = frozenset({"1w", "1m", "1y"})

RECENT_FRACTION = 0.25
FLAT_EPSILON = 1e-6

PRICE_METRIC = "priceUSD"

Point = tuple[int, float]


def clean_rows(rows: Iterable[tuple[int, Any]]) -> list[Point]:
    """De-duplicate by timestamp, drop invalid values, sort ascending.

    Later rows win over earlier rows with the same timestamp.
    """
    by_time: dict[int, float | None] = {}
    for timestamp, raw in rows:
        by_time[int(timestamp)] = _to_float(raw)
    return sorted(
        (t, v)
        for t, v in by_time.items()
        if v is not None and math.isfinite(v) and v > 0
    )


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def even_sample(points: Sequence[Point], count: int) -> list[Point]:
    """Pick ``count`` evenly spaced points, always including the last one."""
    if count <= 0:
        return []
    if len(points) <= count:
        return list(points)
    if count == 1:
        return [points[-1]]
    step = (len(points) - 1) / (count - 1)
    indices = sorted({round(i * step) for i in range(count)})
    return [points[i] for i in indices]


def sample_points(
    points: Sequence[Point], max_points: int, recent_bias: bool
) -> list[Point]:
    """Reduce ``points`` to at most ``max_points``.

    With ``recent_bias`` every point in the most recent quarter of the time
    range is kept and the older part fills the remaining slots evenly.
    """
    if len(points) <= max_points:
        return list(points)
    if not recent_bias:
        return even_sample(points, max_points)

    first, last = points[0][0], points[-1][0]
    cutoff = last - (last - first) * RECENT_FRACTION
    older = [p for p in points if p[0] < cutoff]
    recent = [p for p in points if p[0] >= cutoff]

    if len(recent) >= max_points:
        return even_sample(recent, max_points)

    remaining = max_points - len(recent)
    return even_sample(older, remaining) + recent


def remove_flat_segments(
    points: Sequence[Point], epsilon: float = FLAT_EPSILON
) -> list[Point]:
    """Drop middle points equal (within ``epsilon``) to both neighbours.

    The predecessor is the last kept point. First and last always stay.
    """
    if len(points) <= 2:
        return list(points)

    result = [points[0]]
    for index in range(1, len(points) - 1):
        value = points[index][1]
        previous = result[-1][1]
        following = points[index + 1][1]
        if abs(previous - value) <= epsilon and abs(following - value) <= epsilon:
            continue
        result.append(points[index])
    result.append(points[-1])
    return result


class ChartSeriesBuilder:
    """Builds ascending ``{time, value}`` series from snapshot history."""

    def __init__(
        self,
        resolver: PriceResolver,
        cache: TieredCache,
        tokens: TokenRepository,
        pairs: PairRepository,
        snapshots: SnapshotRepository,
        cache_ttl: int = 300,
        step_timeout: float = 5.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize chart series builder.

        Args:
            resolver: Price resolver for converting pair rates to USD
            cache: Tiered cache
            tokens: Token repository
            pairs: Pair repository
            snapshots: Snapshot repository
            cache_ttl: Whole-series cache TTL in seconds
            step_timeout: Timeout in seconds for each repository call
            now_fn: Optional function to get current timestamp (for testing)
        """
        self.resolver = resolver
        self.cache = cache
        self.tokens = tokens
        self.pairs = pairs
        self.snapshots = snapshots
        self.cache_ttl = cache_ttl
        self.step_timeout = step_timeout
        self._now_fn = now_fn or time.time

    async def get_series(
        self, token_address: str, timeframe: str = DEFAULT_TIMEFRAME, limit: int = 100
    ) -> list[ChartPoint]:
        """Price series for a token; empty when no history is available.

        Raises:
            InvalidArgumentError: If the address is empty or ``limit`` < 1
        """
        if not isinstance(token_address, str) or not token_address.strip():
            raise InvalidArgumentError(f"Invalid token address: {token_address!r}")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidArgumentError(f"Invalid limit: {limit!r}")

        timeframe = (timeframe or "").lower()
        if timeframe not in TIMEFRAMES:
            logger.warning(
                "Unknown timeframe, using default",
                timeframe=timeframe,
                default=DEFAULT_TIMEFRAME,
            )
            timeframe = DEFAULT_TIMEFRAME

        address = token_address.strip().lower()
        sub_key = f"{timeframe}:{limit}"

        cached = await self.cache.get(CacheNamespace.CHART, address, sub_key)
        if isinstance(cached, list):
            return [ChartPoint.model_validate(p) for p in cached]

        try:
            rows = await self._load_rows(address, timeframe, limit)
        except Exception as e:
            logger.error(
                "Failed to load chart data",
                token_address=address,
                timeframe=timeframe,
                error=str(e),
            )
            return []

        _, max_points = TIMEFRAMES[timeframe]
        target = min(limit, max_points)
        points = sample_points(
            rows, target, recent_bias=timeframe in RECENT_BIASED_TIMEFRAMES
        )
        if timeframe in FLAT_FILTERED_TIMEFRAMES:
            points = remove_flat_segments(points)

        series = [ChartPoint(time=t, value=v) for t, v in points]
        if series:
            await self.cache.set(
                CacheNamespace.CHART,
                address,
                [p.model_dump() for p in series],
                ttl=self.cache_ttl,
                sub_key=sub_key,
            )

        logger.debug(
            "Chart series built",
            token_address=address,
            timeframe=timeframe,
            source_rows=len(rows),
            points=len(series),
        )
        return series

    async def _read(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, self.step_timeout)

    async def _load_rows(
        self, address: str, timeframe: str, limit: int
    ) -> list[Point]:
        token = await self._read(self.tokens.get_token_by_address(address))
        if token is None:
            logger.info("Chart requested for unknown token", token_address=address)
            return []

        lookback, _ = TIMEFRAMES[timeframe]
        since = int(self._now_fn()) - lookback

        rows = await self._metric_rows(token, since)
        if rows:
            return rows

        pair = await self._chart_pair(token)
        if pair is not None:
            rows = await self._pair_rows(token, pair, since, None)
            if rows:
                return rows

        # Nothing in the window: fall back to the most recent history.
        rows = (await self._metric_rows(token, 0))[-limit:]
        if rows:
            return rows
        if pair is not None:
            return await self._pair_rows(token, pair, None, limit)
        return []

    async def _metric_rows(self, token: Token, since: int) -> list[Point]:
        snapshots = await self._read(
            self.snapshots.find_metric_snapshots(
                EntityKind.TOKEN.value, token.id, PRICE_METRIC, since
            )
        )
        return clean_rows((s.timestamp, s.value) for s in snapshots)

    async def _chart_pair(self, token: Token) -> PairWithTokens | None:
        pairs = await self._read(self.pairs.find_pairs_by_token(token.id))
        for pair in pairs:
            if pair.counterpart(token.id).id != token.id:
                return pair
        return None

    async def _pair_rows(
        self,
        token: Token,
        pair: PairWithTokens,
        since: int | None,
        limit: int | None,
    ) -> list[Point]:
        """Pair exchange rates converted to USD with the counterpart's price."""
        counterpart = pair.counterpart(token.id)
        counterpart_price = await self.resolver.get_usd_price(counterpart.id)
        if counterpart_price <= 0:
            logger.info(
                "No counterpart price for chart conversion",
                token_id=token.id,
                counterpart_id=counterpart.id,
            )
            return []

        side = pair.side_of(token.id)
        snapshots = await self._read(
            self.snapshots.find_price_snapshots(
                pair.pair.id, from_timestamp=since, limit=limit
            )
        )

        rows: list[tuple[int, Any]] = []
        for snapshot in snapshots:
            raw = snapshot.price0 if side == 0 else snapshot.price1
            try:
                rate = Decimal(raw) if raw is not None else None
            except (InvalidOperation, ValueError):
                rate = None
            value = float(rate * counterpart_price) if rate is not None else None
            rows.append((snapshot.timestamp, value))
        return clean_rows(rows)
