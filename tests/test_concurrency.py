"""Tests for call coalescing and bounded fan-out."""

import asyncio

import pytest

from pricing.core.concurrency import SingleFlight, gather_bounded


class TestSingleFlight:
    """Test shared in-flight computations."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        """Test that callers for the same key run the function once."""
        flight = SingleFlight()
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.01)
            return 42

        results = await asyncio.gather(
            *(flight.do("k", compute) for _ in range(3))
        )

        assert results == [42, 42, 42]
        assert len(calls) == 1
        assert flight.inflight == 0

    @pytest.mark.asyncio
    async def test_cancelled_initiator_leaves_joiner_running(self):
        """Test that cancelling the first caller does not cancel the work."""
        flight = SingleFlight()
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.05)
            return "done"

        first = asyncio.create_task(flight.do("k", compute))
        await asyncio.sleep(0)
        second = asyncio.create_task(flight.do("k", compute))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        assert await second == "done"
        assert len(calls) == 1
        assert flight.inflight == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller(self):
        """Test that an exception propagates to all joined callers."""
        flight = SingleFlight()

        async def compute():
            await asyncio.sleep(0.01)
            raise LookupError("gone")

        results = await asyncio.gather(
            flight.do("k", compute),
            flight.do("k", compute),
            return_exceptions=True,
        )

        assert all(isinstance(r, LookupError) for r in results)
        assert flight.inflight == 0

    @pytest.mark.asyncio
    async def test_new_call_after_completion(self):
        """Test that a finished key is computed again on the next call."""
        flight = SingleFlight()
        counter = iter(range(10))

        async def compute():
            return next(counter)

        assert await flight.do("k", compute) == 0
        assert await flight.do("k", compute) == 1


class TestGatherBounded:
    """Test bounded concurrent mapping."""

    @pytest.mark.asyncio
    async def test_order_and_limit(self):
        """Test that results keep input order and concurrency stays bounded."""
        running = 0
        peak = 0

        async def work(item):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01 * (5 - item))
            running -= 1
            return item * 2

        results = await gather_bounded(range(5), work, limit=2)

        assert results == [0, 2, 4, 6, 8]
        assert peak == 2
