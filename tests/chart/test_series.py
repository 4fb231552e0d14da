"""Tests for chart series building."""

import asyncio
import time

import pytest

from pricing.cache.tiered import CacheNamespace, TieredCache
from pricing.chart.series import (
    ChartSeriesBuilder,
    clean_rows,
    even_sample,
    remove_flat_segments,
    sample_points,
)
from pricing.core.errors import InvalidArgumentError
from pricing.core.types import ChartPoint, MetricSnapshot, Pair, PriceSnapshot, Token
from pricing.persist.memory import InMemoryStore
from pricing.price.resolver import PriceResolver

NOW = 1_700_000_000
E18 = 10**18
E6 = 10**6


class TestSeriesFunctions:
    """Test the pure series helpers."""

    def test_clean_rows(self):
        """Test de-duplication, filtering and ordering."""
        rows = [
            (3, "1"),
            (1, "2"),
            (3, "5"),
            (2, "-1"),
            (4, None),
            (5, "nan"),
            (6, "inf"),
            (7, "abc"),
            (8, 0),
        ]

        assert clean_rows(rows) == [(1, 2.0), (3, 5.0)]

    def test_even_sample_keeps_last_point(self):
        """Test even spacing with the last point included."""
        points = [(t, float(t)) for t in range(10)]

        assert even_sample(points, 4) == [(0, 0.0), (3, 3.0), (6, 6.0), (9, 9.0)]
        assert even_sample(points, 1) == [(9, 9.0)]
        assert even_sample(points, 0) == []
        assert even_sample(points[:3], 5) == points[:3]

    def test_sample_points_without_bias(self):
        """Test plain downsampling."""
        points = [(t, 1.0 + t) for t in range(100)]

        sampled = sample_points(points, 10, recent_bias=False)

        assert len(sampled) == 10
        assert sampled[0] == points[0]
        assert sampled[-1] == points[-1]

    def test_sample_points_with_recent_bias(self):
        """Test that the most recent quarter is kept at full resolution."""
        points = [(t, 1.0 + t) for t in range(100)]

        sampled = sample_points(points, 40, recent_bias=True)

        assert len(sampled) == 40
        assert sampled[-25:] == points[75:]
        assert [p[0] for p in sampled] == sorted(p[0] for p in sampled)

    def test_sample_points_dense_recent_quarter(self):
        """Test that a dense recent quarter is itself downsampled."""
        points = [(t, 1.0 + t) for t in range(100)]

        sampled = sample_points(points, 20, recent_bias=True)

        assert len(sampled) == 20
        assert all(t >= 75 for t, _ in sampled)
        assert sampled[-1] == points[-1]

    def test_sample_points_short_series_unchanged(self):
        """Test that short series pass through."""
        points = [(1, 1.0), (2, 2.0)]
        assert sample_points(points, 10, recent_bias=True) == points

    def test_remove_flat_segments(self):
        """Test dropping points equal to both neighbours."""
        points = [(0, 1.0), (1, 1.0), (2, 1.0), (3, 2.0), (4, 2.0), (5, 2.0)]

        assert remove_flat_segments(points) == [(0, 1.0), (2, 1.0), (3, 2.0), (5, 2.0)]

    def test_remove_flat_segments_keeps_endpoints(self):
        """Test that a fully flat series keeps its first and last point."""
        points = [(t, 3.0) for t in range(5)]

        assert remove_flat_segments(points) == [(0, 3.0), (4, 3.0)]
        assert remove_flat_segments(points[:2]) == points[:2]


class StalledSnapshotStore(InMemoryStore):
    async def find_metric_snapshots(self, *args, **kwargs):
        await asyncio.sleep(10)
        return []


def _price_row(timestamp: int, value: str) -> MetricSnapshot:
    return MetricSnapshot(
        entity="token",
        entity_id="kkub",
        metric_type="priceUSD",
        value=value,
        timestamp=timestamp,
    )


class TestChartSeriesBuilder:
    """Test series assembly from stored history."""

    @pytest.fixture
    def store(self):
        store = InMemoryStore()
        store.add_token(Token(id="kkub", address="0xKKUB", symbol="KKUB", decimals=18))
        store.add_token(
            Token(
                id="usdt", address="0xUSDT", symbol="USDT", decimals=6, price_usd="1.0"
            )
        )
        store.add_pair(
            Pair(
                id="p1",
                address="0xPAIR1",
                token0_id="kkub",
                token1_id="usdt",
                reserve0=str(500 * E18),
                reserve1=str(1000 * E6),
                reserve_usd="2000",
            )
        )
        return store

    @pytest.fixture
    def builder(self, store):
        def clock() -> float:
            return NOW

        cache = TieredCache(shared=None, now_fn=clock)
        resolver = PriceResolver(tokens=store, pairs=store, cache=cache, now_fn=clock)
        return ChartSeriesBuilder(
            resolver=resolver,
            cache=cache,
            tokens=store,
            pairs=store,
            snapshots=store,
            now_fn=clock,
        )

    @pytest.mark.asyncio
    async def test_series_from_metric_history(self, builder, store):
        """Test ascending points from price metrics inside the window."""
        store.add_metric_snapshots(
            [_price_row(NOW - i * 600, str(2 + i / 100)) for i in range(10)]
        )

        series = await builder.get_series("0xkkub", "1d")

        assert len(series) == 10
        assert all(isinstance(p, ChartPoint) for p in series)
        assert [p.time for p in series] == sorted(p.time for p in series)
        assert series[-1] == ChartPoint(time=NOW, value=2.0)

    @pytest.mark.asyncio
    async def test_limit_caps_points(self, builder, store):
        """Test that limit bounds the number of points."""
        store.add_metric_snapshots(
            [_price_row(NOW - i * 60, str(1 + i)) for i in range(200)]
        )

        series = await builder.get_series("0xKKUB", "1d", limit=5)

        assert len(series) == 5
        assert series[-1].time == NOW

    @pytest.mark.asyncio
    async def test_timeframe_max_points(self, builder, store):
        """Test that the timeframe's maximum applies below limit."""
        store.add_metric_snapshots(
            [_price_row(NOW - i * 30, str(1 + i)) for i in range(100)]
        )

        series = await builder.get_series("0xkkub", "1h", limit=500)

        assert len(series) == 60

    @pytest.mark.asyncio
    async def test_series_is_cached(self, builder, store):
        """Test that a built series is served from cache."""
        store.add_metric_snapshots([_price_row(NOW - 60, "2")])

        first = await builder.get_series("0xkkub", "1d")
        reads = store.calls["find_metric_snapshots"]
        second = await builder.get_series("0xKKUB", "1d")

        assert first == second
        assert store.calls["find_metric_snapshots"] == reads

    @pytest.mark.asyncio
    async def test_unknown_timeframe_uses_default(self, builder, store):
        """Test that an unknown timeframe behaves like 1d."""
        store.add_metric_snapshots([_price_row(NOW - 60, "2")])

        series = await builder.get_series("0xkkub", "5y")

        assert series == await builder.get_series("0xkkub", "1d")

    @pytest.mark.asyncio
    async def test_falls_back_to_pair_snapshots(self, builder, store):
        """Test pair rates converted with the counterpart price."""
        store.add_price_snapshots(
            [
                PriceSnapshot(pair_id="p1", timestamp=NOW - 120, price0="2.0"),
                PriceSnapshot(pair_id="p1", timestamp=NOW - 60, price0="2.5"),
            ]
        )

        series = await builder.get_series("0xkkub", "1d")

        assert series == [
            ChartPoint(time=NOW - 120, value=2.0),
            ChartPoint(time=NOW - 60, value=2.5),
        ]

    @pytest.mark.asyncio
    async def test_falls_back_to_latest_history(self, builder, store):
        """Test that old history is used when the window is empty."""
        store.add_metric_snapshots(
            [_price_row(NOW - 10 * 86400, "1.5"), _price_row(NOW - 9 * 86400, "1.7")]
        )

        series = await builder.get_series("0xkkub", "1d", limit=1)

        assert series == [ChartPoint(time=NOW - 9 * 86400, value=1.7)]

    @pytest.mark.asyncio
    async def test_flat_segments_removed_for_long_timeframes(self, builder, store):
        """Test flat-line filtering on weekly series."""
        store.add_metric_snapshots(
            [_price_row(NOW - i * 3600, "2") for i in range(1, 6)]
            + [_price_row(NOW, "3")]
        )

        series = await builder.get_series("0xkkub", "1w")

        assert [p.value for p in series] == [2.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_empty_series_is_not_cached(self, builder, store):
        """Test that a token without history returns [] and retries later."""
        assert await builder.get_series("0xkkub", "1d") == []

        store.add_metric_snapshots([_price_row(NOW - 60, "2")])
        assert await builder.get_series("0xkkub", "1d") == [
            ChartPoint(time=NOW - 60, value=2.0)
        ]

    @pytest.mark.asyncio
    async def test_unknown_token_is_empty(self, builder):
        """Test that an unknown address yields an empty series."""
        assert await builder.get_series("0xnothing", "1d") == []

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, builder):
        """Test address and limit validation."""
        with pytest.raises(InvalidArgumentError):
            await builder.get_series("", "1d")
        with pytest.raises(InvalidArgumentError):
            await builder.get_series("0xkkub", "1d", limit=0)

    @pytest.mark.asyncio
    async def test_stalled_repository_times_out(self):
        """Test that a hanging history read is bounded and yields []."""
        store = StalledSnapshotStore()
        store.add_token(Token(id="kkub", address="0xKKUB", symbol="KKUB", decimals=18))
        cache = TieredCache(shared=None)
        resolver = PriceResolver(tokens=store, pairs=store, cache=cache)
        builder = ChartSeriesBuilder(
            resolver=resolver,
            cache=cache,
            tokens=store,
            pairs=store,
            snapshots=store,
            step_timeout=0.05,
        )

        started = time.monotonic()
        series = await builder.get_series("0xkkub", "1d")

        assert series == []
        assert time.monotonic() - started < 2
        assert await cache.get(CacheNamespace.CHART, "0xkkub", "1d:100") is None
