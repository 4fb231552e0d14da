"""Small asyncio helpers for coalescing and bounded fan-out."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class SingleFlight:
    """Coalesce concurrent calls for the same key into one computation."""

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def inflight(self) -> int:
        """Number of keys currently being computed."""
        return len(self._inflight)

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` unless a call for ``key`` is already running, then share it.

        The computation runs in its own task. Cancelling one caller (for
        example through its own timeout) leaves the task running for the
        other callers.
        """
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._finish(key, t))
        else:
            logger.debug("Joining in-flight computation", key=key)
        return await asyncio.shield(task)

    def _finish(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark retrieved so a failure nobody awaited does not warn.
            task.exception()


async def gather_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    limit: int,
) -> list[R]:
    """Apply ``fn`` to every item with at most ``limit`` running at once.

    Results keep the order of ``items``. Exceptions propagate; callers that
    need per-item isolation catch inside ``fn``.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: T) -> R:
        async with semaphore:
            return await fn(item)

    return list(await asyncio.gather(*(run(item) for item in items)))
