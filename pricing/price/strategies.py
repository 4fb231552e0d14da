"""Ordered price strategies and the runner that executes them."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal, InvalidOperation

import structlog

from ..core.interfaces import PairRepository, TokenRepository
from ..core.types import PairWithTokens, Token

logger = structlog.get_logger(__name__)

# Names of strategies whose results are derived rather than read back.
DERIVED_STRATEGIES = frozenset({"stablecoin_pair", "routed", "oracle"})


def to_price(value: object) -> Decimal | None:
    """Parse a stored price; None unless it is finite and positive."""
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class ResolutionContext:
    """State of one price resolution, shared by its strategies.

    Token and pair lookups are loaded once per context.
    """

    def __init__(
        self,
        token_id: str,
        tokens: TokenRepository,
        pairs: PairRepository,
        visited: frozenset[str] = frozenset(),
        depth: int = 0,
    ) -> None:
        self.token_id = token_id
        self.visited = visited
        self.depth = depth
        self._tokens = tokens
        self._pairs = pairs
        self._token: Token | None = None
        self._token_loaded = False
        self._pair_list: list[PairWithTokens] | None = None

    async def token(self) -> Token | None:
        if not self._token_loaded:
            self._token = await self._tokens.get_token(self.token_id)
            self._token_loaded = True
        return self._token

    async def pairs(self) -> list[PairWithTokens]:
        if self._pair_list is None:
            self._pair_list = await self._pairs.find_pairs_by_token(self.token_id)
        return self._pair_list

    def child_visited(self) -> frozenset[str]:
        """Visited set handed to counterpart resolutions."""
        return self.visited | {self.token_id}


StrategyFn = Callable[[ResolutionContext], Awaitable[Decimal | None]]


class PriceStrategy:
    """A named step of the price fallback chain."""

    def __init__(self, name: str, fn: StrategyFn) -> None:
        self.name = name
        self.fn = fn

    def __repr__(self) -> str:
        return f"PriceStrategy({self.name!r})"


class StrategyRunner:
    """Runs strategies in order and stops at the first positive price.

    Every step runs under its own timeout. A timeout or error fails that
    step only and the runner moves on to the next one.
    """

    def __init__(self, step_timeout: float = 5.0) -> None:
        self.step_timeout = step_timeout

    async def run(
        self,
        ctx: ResolutionContext,
        strategies: Sequence[PriceStrategy],
    ) -> tuple[str, Decimal] | None:
        for strategy in strategies:
            try:
                value = await asyncio.wait_for(strategy.fn(ctx), self.step_timeout)
            except TimeoutError:
                logger.warning(
                    "Price strategy timed out",
                    strategy=strategy.name,
                    token_id=ctx.token_id,
                    timeout=self.step_timeout,
                )
                continue
            except Exception as e:
                logger.warning(
                    "Price strategy failed",
                    strategy=strategy.name,
                    token_id=ctx.token_id,
                    error=str(e),
                )
                continue

            if value is not None and value.is_finite() and value > 0:
                logger.debug(
                    "Price resolved",
                    strategy=strategy.name,
                    token_id=ctx.token_id,
                    price=str(value),
                    depth=ctx.depth,
                )
                return strategy.name, value

        return None


def within_band(value: Decimal, low: float, high: float, inclusive: bool) -> bool:
    """Check a price against a sanity band."""
    if not value.is_finite():
        return False
    number = float(value)
    if inclusive:
        return low <= number <= high
    return low < number < high
