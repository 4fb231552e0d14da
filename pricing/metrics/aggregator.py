"""Volume, TVL, market cap and FDV aggregation with staleness checks."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

import structlog

from ..cache.tiered import CacheNamespace, TieredCache
from ..core import reserves
from ..core.concurrency import gather_bounded
from ..core.errors import InvalidArgumentError, ReserveMathError
from ..core.interfaces import (
    PairRepository,
    SnapshotRepository,
    SwapRepository,
    TokenRepository,
)
from ..core.types import (
    EntityKind,
    EntityRef,
    PairMetrics,
    PairWithTokens,
    ProtocolMetrics,
    Swap,
    Token,
    TokenMetrics,
)
from ..price.resolver import PriceResolver, validate_token_id

logger = structlog.get_logger(__name__)

T = TypeVar("T")

HOUR = 3600
DAY = 24 * HOUR
WEEK = 7 * DAY
MONTH = 30 * DAY

PROTOCOL_ID = "protocol"

# Market cap assumptions when supply data is missing.
CIRCULATING_RATIO = Decimal("0.7")
PLACEHOLDER_SUPPLY = Decimal(1_000_000)
FDV_MULTIPLIER = Decimal("1.5")

ZERO = Decimal(0)


def percent_change(current: Decimal | float, previous: Decimal | float) -> float:
    """Percentage change; 0 when there is no previous value."""
    if previous <= 0:
        return 0.0
    return (float(current) - float(previous)) / float(previous) * 100


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


class _PairComputation:
    """Pair metrics plus the previous-window volumes protocol totals need."""

    def __init__(
        self, metrics: PairMetrics, previous_1h: Decimal, previous_24h: Decimal
    ) -> None:
        self.metrics = metrics
        self.previous_1h = previous_1h
        self.previous_24h = previous_24h


class MetricsAggregator:
    """Computes protocol, pair and token metrics behind the tiered cache.

    A cached entry is only served while its own timestamp is younger than the
    staleness bound. Per-entity failures return zeroed metrics.
    """

    def __init__(
        self,
        resolver: PriceResolver,
        cache: TieredCache,
        tokens: TokenRepository,
        pairs: PairRepository,
        swaps: SwapRepository,
        snapshots: SnapshotRepository,
        fee_rate: float = 0.003,
        staleness_seconds: int = 300,
        max_concurrency: int = 8,
        step_timeout: float = 5.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize metrics aggregator.

        Args:
            resolver: Price resolver for USD conversion
            cache: Tiered cache
            tokens: Token repository
            pairs: Pair repository
            swaps: Swap repository
            snapshots: Snapshot repository (price history)
            fee_rate: Swap fee rate used for fees and APR
            staleness_seconds: Maximum age of a served metric
            max_concurrency: Bound on parallel entity work
            step_timeout: Timeout in seconds for each repository call
            now_fn: Optional function to get current timestamp (for testing)
        """
        self.resolver = resolver
        self.cache = cache
        self.tokens = tokens
        self.pairs = pairs
        self.swaps = swaps
        self.snapshots = snapshots
        self.fee_rate = Decimal(str(fee_rate))
        self.staleness_seconds = staleness_seconds
        self.max_concurrency = max_concurrency
        self.step_timeout = step_timeout
        self._now_fn = now_fn or time.time

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        resolver: PriceResolver,
        cache: TieredCache,
        storage: Any,
    ) -> "MetricsAggregator":
        """Build an aggregator from ``AppSettings`` over one storage object."""
        return cls(
            resolver=resolver,
            cache=cache,
            tokens=storage,
            pairs=storage,
            swaps=storage,
            snapshots=storage,
            fee_rate=settings.fee_rate,
            staleness_seconds=settings.metrics_staleness_seconds,
            max_concurrency=settings.max_concurrency,
            step_timeout=settings.step_timeout_seconds,
        )

    def now(self) -> int:
        return int(self._now_fn())

    async def _read(self, call: Awaitable[T]) -> T:
        """Repository call bounded by ``step_timeout``."""
        return await asyncio.wait_for(call, self.step_timeout)

    def is_stale(
        self, timestamp: int | str | None, threshold: int | None = None
    ) -> bool:
        """Check whether a metric timestamp is older than ``threshold``."""
        if not timestamp:
            return True
        try:
            metric_time = int(timestamp)
        except (TypeError, ValueError):
            return True
        limit = self.staleness_seconds if threshold is None else threshold
        return self.now() - metric_time >= limit

    # Public getters

    async def get_protocol_metrics(
        self, force_refresh: bool = False
    ) -> ProtocolMetrics:
        """Protocol-wide totals."""
        if not force_refresh:
            cached = await self._cached(EntityKind.PROTOCOL, PROTOCOL_ID)
            if cached is not None:
                return ProtocolMetrics.model_validate(cached)

        try:
            metrics = await self._compute_protocol()
        except Exception as e:
            logger.error("Failed to compute protocol metrics", error=str(e))
            return ProtocolMetrics(timestamp=self.now())

        await self._store(EntityKind.PROTOCOL, PROTOCOL_ID, metrics.model_dump())
        return metrics

    async def get_pair_metrics(
        self, pair_id: str, force_refresh: bool = False
    ) -> PairMetrics:
        """Metrics for one pair.

        Raises:
            InvalidArgumentError: If ``pair_id`` is empty or not a string
        """
        if not isinstance(pair_id, str) or not pair_id.strip():
            raise InvalidArgumentError(f"Invalid pair id: {pair_id!r}")

        if not force_refresh:
            cached = await self._cached(EntityKind.PAIR, pair_id)
            if cached is not None:
                return PairMetrics.model_validate(cached)

        try:
            metrics = await self._refresh_pair(pair_id)
        except Exception as e:
            logger.error(
                "Failed to compute pair metrics", pair_id=pair_id, error=str(e)
            )
            return PairMetrics(id=pair_id, last_update=self.now())
        return metrics

    async def get_token_metrics(
        self, token_id: str, force_refresh: bool = False
    ) -> TokenMetrics:
        """Metrics for one token.

        Raises:
            InvalidTokenIdError: If ``token_id`` is empty or not a string
        """
        validate_token_id(token_id)

        if not force_refresh:
            cached = await self._cached(EntityKind.TOKEN, token_id)
            if cached is not None:
                return TokenMetrics.model_validate(cached)

        try:
            metrics = await self._refresh_token(token_id)
        except Exception as e:
            logger.error(
                "Failed to compute token metrics", token_id=token_id, error=str(e)
            )
            return TokenMetrics(id=token_id, last_update=self.now())
        return metrics

    async def mark_dirty(self, entity: EntityRef) -> None:
        """Drop cached metrics for an entity and for the protocol totals."""
        await self.cache.invalidate(
            CacheNamespace.METRICS, entity.id, entity.kind.value
        )
        if entity.kind != EntityKind.PROTOCOL:
            await self.cache.invalidate(
                CacheNamespace.METRICS, PROTOCOL_ID, EntityKind.PROTOCOL.value
            )
        logger.debug(
            "Metrics marked dirty", kind=entity.kind.value, entity_id=entity.id
        )

    async def update_all(self) -> dict[str, int]:
        """Recompute every pair, every token, then the protocol totals.

        A failing entity is logged and its cached metrics are replaced with
        zeroed defaults; the sweep always completes.
        """
        pair_ids = await self._read(self.pairs.list_pair_ids())
        token_ids = await self._read(self.tokens.list_token_ids())

        async def refresh_pair(pair_id: str) -> bool:
            try:
                await self._refresh_pair(pair_id)
                return True
            except Exception as e:
                logger.warning(
                    "Pair metrics update failed", pair_id=pair_id, error=str(e)
                )
                await self._store(
                    EntityKind.PAIR,
                    pair_id,
                    PairMetrics(id=pair_id, last_update=self.now()).model_dump(),
                )
                return False

        async def refresh_token(token_id: str) -> bool:
            try:
                await self._refresh_token(token_id)
                return True
            except Exception as e:
                logger.warning(
                    "Token metrics update failed", token_id=token_id, error=str(e)
                )
                await self._store(
                    EntityKind.TOKEN,
                    token_id,
                    TokenMetrics(id=token_id, last_update=self.now()).model_dump(),
                )
                return False

        pair_results = await gather_bounded(
            pair_ids, refresh_pair, self.max_concurrency
        )
        token_results = await gather_bounded(
            token_ids, refresh_token, self.max_concurrency
        )
        await self.get_protocol_metrics(force_refresh=True)

        summary = {
            "pairs": sum(pair_results),
            "tokens": sum(token_results),
            "failed": pair_results.count(False) + token_results.count(False),
        }
        logger.info("Metrics sweep completed", **summary)
        return summary

    # Cache helpers

    async def _cached(self, kind: EntityKind, entity_id: str) -> dict[str, Any] | None:
        cached = await self.cache.get(CacheNamespace.METRICS, entity_id, kind.value)
        if not isinstance(cached, dict):
            return None
        field = "timestamp" if kind == EntityKind.PROTOCOL else "last_update"
        stamp = cached.get(field)
        if self.is_stale(stamp):
            logger.debug("Cached metrics stale", kind=kind.value, entity_id=entity_id)
            return None
        return cached

    async def _store(self, kind: EntityKind, entity_id: str, payload: dict) -> None:
        await self.cache.set(
            CacheNamespace.METRICS, entity_id, payload, sub_key=kind.value
        )

    # Computation

    async def _refresh_pair(self, pair_id: str) -> PairMetrics:
        pair = await self._read(self.pairs.get_pair(pair_id))
        if pair is None:
            raise LookupError(f"Pair not found: {pair_id}")
        computed = await self._compute_pair(pair)
        await self._store(EntityKind.PAIR, pair_id, computed.metrics.model_dump())
        return computed.metrics

    async def _refresh_token(self, token_id: str) -> TokenMetrics:
        token = await self._read(self.tokens.get_token(token_id))
        if token is None:
            raise LookupError(f"Token not found: {token_id}")
        metrics = await self._compute_token(token)
        await self._store(EntityKind.TOKEN, token_id, metrics.model_dump())
        return metrics

    async def _pair_prices(self, pair: PairWithTokens) -> tuple[Decimal, Decimal]:
        price0 = await self.resolver.get_usd_price(pair.token0.id)
        price1 = await self.resolver.get_usd_price(pair.token1.id)
        return price0, price1

    def _pair_tvl(
        self, pair: PairWithTokens, price0: Decimal, price1: Decimal
    ) -> Decimal:
        side0 = reserves.to_decimal(pair.pair.reserve0, pair.token0.decimals)
        side1 = reserves.to_decimal(pair.pair.reserve1, pair.token1.decimals)
        return side0 * price0 + side1 * price1

    def _swap_value(
        self, swap: Swap, pair: PairWithTokens, price0: Decimal, price1: Decimal
    ) -> Decimal:
        precomputed = _to_decimal(swap.value_usd)
        if precomputed is not None and precomputed > 0:
            return precomputed
        amount0 = reserves.to_decimal(swap.amount_in0, pair.token0.decimals)
        amount1 = reserves.to_decimal(swap.amount_in1, pair.token1.decimals)
        return amount0 * price0 + amount1 * price1

    async def _window_volumes(
        self, pair: PairWithTokens, price0: Decimal, price1: Decimal
    ) -> dict[str, Decimal]:
        """USD volume per window, plus the windows preceding 1h and 24h.

        Windows are half-open: ``start < timestamp <= end``.
        """
        now = self.now()
        windows = {
            "1h": (now - HOUR, now),
            "24h": (now - DAY, now),
            "7d": (now - WEEK, now),
            "30d": (now - MONTH, now),
            "prev_1h": (now - 2 * HOUR, now - HOUR),
            "prev_24h": (now - 2 * DAY, now - DAY),
        }
        totals = dict.fromkeys(windows, ZERO)

        swaps = await self._read(
            self.swaps.find_swaps_by_pair(pair.pair.id, now - MONTH)
        )
        for swap in swaps:
            try:
                value = self._swap_value(swap, pair, price0, price1)
            except ReserveMathError as e:
                logger.debug("Skipping malformed swap", swap_id=swap.id, error=str(e))
                continue
            for name, (start, end) in windows.items():
                if start < swap.timestamp <= end:
                    totals[name] += value
        return totals

    async def _compute_pair(self, pair: PairWithTokens) -> _PairComputation:
        price0, price1 = await self._pair_prices(pair)
        tvl = self._pair_tvl(pair, price0, price1)
        volumes = await self._window_volumes(pair, price0, price1)

        volume_24h = volumes["24h"]
        pool_apr = (
            float(volume_24h * self.fee_rate / tvl * 365 * 100) if tvl > 0 else 0.0
        )
        metrics = PairMetrics(
            id=pair.pair.id,
            address=pair.pair.address,
            reserve_usd=float(tvl),
            tvl=float(tvl),
            volume_1h=float(volumes["1h"]),
            volume_24h=float(volume_24h),
            volume_7d=float(volumes["7d"]),
            volume_30d=float(volumes["30d"]),
            volume_change_24h=percent_change(volume_24h, volumes["prev_24h"]),
            volume_tvl_ratio=float(volume_24h / tvl) if tvl > 0 else 0.0,
            pool_apr=pool_apr,
            last_update=self.now(),
        )
        return _PairComputation(metrics, volumes["prev_1h"], volumes["prev_24h"])

    async def _compute_token(self, token: Token) -> TokenMetrics:
        price = await self.resolver.get_usd_price(token.id)
        pairs = await self._read(self.pairs.find_pairs_by_token(token.id))

        tvl = ZERO
        totals = {"1h": ZERO, "24h": ZERO, "7d": ZERO, "30d": ZERO, "prev_24h": ZERO}
        for pair in pairs:
            try:
                own_reserve, _ = pair.reserves_for(token.id)
                tvl += reserves.to_decimal(own_reserve, token.decimals) * price
                price0, price1 = await self._pair_prices(pair)
                volumes = await self._window_volumes(pair, price0, price1)
            except Exception as e:
                logger.warning(
                    "Skipping pair in token metrics",
                    token_id=token.id,
                    pair_id=pair.pair.id,
                    error=str(e),
                )
                continue
            for name in totals:
                totals[name] += volumes[name]

        market_cap, fdv = await self._valuation(token.id, price)

        return TokenMetrics(
            id=token.id,
            price_usd=float(price),
            price_change_24h=await self._price_change_24h(token.id, price),
            volume_1h=float(totals["1h"]),
            volume_24h=float(totals["24h"]),
            volume_7d=float(totals["7d"]),
            volume_30d=float(totals["30d"]),
            volume_change_24h=percent_change(totals["24h"], totals["prev_24h"]),
            tvl=float(tvl),
            market_cap=float(market_cap),
            fdv=float(fdv),
            last_update=self.now(),
        )

    async def _valuation(
        self, token_id: str, price: Decimal
    ) -> tuple[Decimal, Decimal]:
        """Market cap and FDV with the supply fallbacks."""
        if price <= 0:
            return ZERO, ZERO

        supply = await self._read(self.tokens.get_token_supply(token_id))
        circulating = _to_decimal(supply.circulating) if supply else None
        total = _to_decimal(supply.total) if supply else None

        if circulating is not None and circulating > 0:
            market_cap = price * circulating
        elif total is not None and total > 0:
            market_cap = price * total * CIRCULATING_RATIO
        else:
            market_cap = price * PLACEHOLDER_SUPPLY

        if total is not None and total > 0:
            fdv = price * total
        else:
            fdv = market_cap * FDV_MULTIPLIER
        return market_cap, fdv

    async def _price_change_24h(self, token_id: str, price: Decimal) -> float | None:
        if price <= 0:
            return None
        history = await self._read(
            self.snapshots.find_metric_snapshots(
                EntityKind.TOKEN.value, token_id, "priceUSD", self.now() - DAY
            )
        )
        for snapshot in history:
            previous = _to_decimal(snapshot.value)
            if previous is not None and previous > 0:
                return percent_change(price, previous)
        return None

    async def _compute_protocol(self) -> ProtocolMetrics:
        pair_ids = await self._read(self.pairs.list_pair_ids())

        async def compute(pair_id: str) -> _PairComputation | None:
            try:
                pair = await self._read(self.pairs.get_pair(pair_id))
                if pair is None:
                    return None
                return await self._compute_pair(pair)
            except Exception as e:
                logger.warning(
                    "Skipping pair in protocol metrics", pair_id=pair_id, error=str(e)
                )
                return None

        results = await gather_bounded(pair_ids, compute, self.max_concurrency)
        computed = [c for c in results if c is not None]

        tvl = sum(c.metrics.tvl for c in computed)
        volume_1h = sum(c.metrics.volume_1h for c in computed)
        volume_24h = sum(c.metrics.volume_24h for c in computed)
        volume_7d = sum(c.metrics.volume_7d for c in computed)
        volume_30d = sum(c.metrics.volume_30d for c in computed)
        previous_1h = float(sum((c.previous_1h for c in computed), ZERO))
        previous_24h = float(sum((c.previous_24h for c in computed), ZERO))

        return ProtocolMetrics(
            id=PROTOCOL_ID,
            timestamp=self.now(),
            total_value_locked_usd=float(tvl),
            volume_1h=float(volume_1h),
            daily_volume_usd=float(volume_24h),
            weekly_volume_usd=float(volume_7d),
            monthly_volume_usd=float(volume_30d),
            volume_1h_change=percent_change(volume_1h, previous_1h),
            volume_24h_change=percent_change(volume_24h, previous_24h),
            daily_fees_usd=volume_24h * float(self.fee_rate),
            total_pairs=len(pair_ids),
            active_pools_count=sum(1 for c in computed if c.metrics.volume_24h > 0),
        )
