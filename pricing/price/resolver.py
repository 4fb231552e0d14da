"""USD price resolution over the liquidity-pair graph."""

import time
from collections.abc import Callable, Iterable
from decimal import Decimal
from typing import Any

import structlog

from ..cache.tiered import CacheNamespace, TieredCache
from ..core import reserves
from ..core.concurrency import SingleFlight, gather_bounded
from ..core.errors import InvalidTokenIdError, OracleError, ReserveMathError
from ..core.interfaces import PairRepository, PriceOracle, TokenRepository
from ..core.types import PairWithTokens, Token
from .strategies import (
    DERIVED_STRATEGIES,
    PriceStrategy,
    ResolutionContext,
    StrategyRunner,
    to_price,
    within_band,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal(0)
ONE = Decimal(1)

STABLECOIN_BAND = (0.5, 1.5)
GENERAL_BAND = (1e-9, 1e9)


def validate_token_id(token_id: Any) -> str:
    """Reject ids that cannot name a token."""
    if not isinstance(token_id, str) or not token_id.strip():
        raise InvalidTokenIdError(token_id)
    return token_id


def _liquidity_key(pair: PairWithTokens) -> tuple[Decimal, int]:
    return to_price(pair.pair.reserve_usd) or ZERO, pair.pair.created_at


class PriceResolver:
    """Resolves token USD prices through an ordered fallback chain.

    Steps: cache, persisted value, stablecoin pair, routed through a
    counterpart, on-chain oracle. A result of 0 means the price is unknown.
    Derived prices (the last three steps) are cached and written back to the
    token record.
    """

    def __init__(
        self,
        tokens: TokenRepository,
        pairs: PairRepository,
        cache: TieredCache,
        oracle: PriceOracle | None = None,
        stablecoin_symbols: Iterable[str] = ("USDT", "USDC"),
        stablecoin_addresses: Iterable[str] = (),
        reference_token_symbol: str = "KKUB",
        step_timeout: float = 5.0,
        max_concurrency: int = 8,
        max_route_depth: int = 3,
        oracle_period: int = 3600,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize price resolver.

        Args:
            tokens: Token repository
            pairs: Pair repository
            cache: Tiered cache
            oracle: Optional TWAP oracle
            stablecoin_symbols: Symbols treated as stablecoins
            stablecoin_addresses: Addresses treated as stablecoins
            reference_token_symbol: Token stablecoins are priced against
            step_timeout: Timeout for each fallback step in seconds
            max_concurrency: Bound on parallel resolutions in bulk calls
            max_route_depth: Maximum depth of counterpart routing
            oracle_period: TWAP period in seconds
            now_fn: Optional function to get current timestamp (for testing)
        """
        self.tokens = tokens
        self.pairs = pairs
        self.cache = cache
        self.oracle = oracle
        self.stablecoin_symbols = {s.upper() for s in stablecoin_symbols}
        self.stablecoin_addresses = {a.lower() for a in stablecoin_addresses}
        self.reference_token_symbol = reference_token_symbol
        self.max_concurrency = max_concurrency
        self.max_route_depth = max_route_depth
        self.oracle_period = oracle_period
        self._now_fn = now_fn or time.time

        self._runner = StrategyRunner(step_timeout=step_timeout)
        self._flight = SingleFlight()

        self.strategies = [
            PriceStrategy("cache", self.from_cache),
            PriceStrategy("persisted", self.from_persisted),
            PriceStrategy("stablecoin_pair", self.from_stablecoin_pair),
            PriceStrategy("routed", self.from_routing),
            PriceStrategy("oracle", self.from_oracle),
        ]
        # Counterpart lookups stop short of the oracle.
        self._routing_strategies = self.strategies[:4]
        self._derived_strategies = self.strategies[2:]

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        tokens: TokenRepository,
        pairs: PairRepository,
        cache: TieredCache,
        oracle: PriceOracle | None = None,
    ) -> "PriceResolver":
        """Build a resolver from ``AppSettings``."""
        return cls(
            tokens=tokens,
            pairs=pairs,
            cache=cache,
            oracle=oracle,
            stablecoin_symbols=settings.stablecoin_symbols,
            stablecoin_addresses=settings.stablecoin_addresses,
            reference_token_symbol=settings.reference_token_symbol,
            step_timeout=settings.step_timeout_seconds,
            max_concurrency=settings.max_concurrency,
            max_route_depth=settings.max_route_depth,
            oracle_period=settings.oracle_period_seconds,
        )

    # Public API

    async def get_usd_price(self, token_id: str) -> Decimal:
        """Resolve a token's USD price; 0 when unknown.

        Raises:
            InvalidTokenIdError: If ``token_id`` is empty or not a string
        """
        validate_token_id(token_id)
        return await self._flight.do(
            token_id, lambda: self._resolve(token_id, self.strategies)
        )

    async def get_usd_prices_bulk(self, token_ids: Iterable[str]) -> dict[str, Decimal]:
        """Resolve several prices with batched cache and repository reads.

        Raises:
            InvalidTokenIdError: If any id is empty or not a string
        """
        ids = list(dict.fromkeys(validate_token_id(t) for t in token_ids))
        results: dict[str, Decimal] = {}
        if not ids:
            return results

        cached = await self.cache.get_bulk(CacheNamespace.PRICE, ids)
        for token_id, value in cached.items():
            price = to_price(value)
            if price is not None:
                results[token_id] = price

        misses = [t for t in ids if t not in results]
        persisted: dict[str, str] = {}
        if misses:
            try:
                for token in await self.tokens.get_tokens(misses):
                    price = to_price(token.price_usd)
                    if price is not None:
                        results[token.id] = price
                        persisted[token.id] = str(price)
            except Exception as e:
                logger.warning("Bulk token read failed", error=str(e))

        remaining = [t for t in ids if t not in results]

        async def derive(token_id: str) -> tuple[str, Decimal]:
            try:
                price = await self._resolve(
                    token_id, self._derived_strategies, cache_result=False
                )
            except Exception as e:
                logger.warning(
                    "Bulk price resolution failed", token_id=token_id, error=str(e)
                )
                price = ZERO
            return token_id, price

        resolved: dict[str, str] = {}
        for token_id, price in await gather_bounded(
            remaining, derive, self.max_concurrency
        ):
            results[token_id] = price
            if price > 0:
                resolved[token_id] = str(price)

        fresh = {**persisted, **resolved}
        if fresh:
            await self.cache.set_bulk(CacheNamespace.PRICE, fresh)

        logger.debug(
            "Bulk prices resolved",
            requested=len(ids),
            cached=len(cached),
            persisted=len(persisted),
            derived=len(resolved),
        )
        return {t: results.get(t, ZERO) for t in ids}

    def is_stablecoin(self, token: Token) -> bool:
        return (token.symbol or "").upper() in self.stablecoin_symbols or (
            token.address.lower() in self.stablecoin_addresses
        )

    def is_sane(self, token: Token, value: Decimal) -> bool:
        """Apply the stablecoin band or the general band."""
        if self.is_stablecoin(token):
            low, high = STABLECOIN_BAND
            return within_band(value, low, high, inclusive=True)
        low, high = GENERAL_BAND
        return within_band(value, low, high, inclusive=False)

    # Strategies

    async def from_cache(self, ctx: ResolutionContext) -> Decimal | None:
        return to_price(await self.cache.get(CacheNamespace.PRICE, ctx.token_id))

    async def from_persisted(self, ctx: ResolutionContext) -> Decimal | None:
        token = await ctx.token()
        if token is None:
            return None
        return to_price(token.price_usd)

    async def from_stablecoin_pair(self, ctx: ResolutionContext) -> Decimal | None:
        """Price against the most liquid stablecoin counterpart."""
        token = await ctx.token()
        if token is None:
            return None

        best: tuple[Decimal, PairWithTokens] | None = None
        for pair in await ctx.pairs():
            counterpart = pair.counterpart(token.id)
            if counterpart.id == token.id or not self.is_stablecoin(counterpart):
                continue
            own_reserve, counterpart_reserve = pair.reserves_for(token.id)
            if not reserves.is_active(own_reserve, counterpart_reserve):
                continue
            depth = reserves.to_decimal(counterpart_reserve, counterpart.decimals)
            if best is None or depth > best[0]:
                best = (depth, pair)

        if best is None:
            return None

        pair = best[1]
        counterpart = pair.counterpart(token.id)
        rate = self._reserve_rate(pair, token)
        stable_price = await self.stablecoin_price(counterpart)
        value = rate * stable_price

        if not self.is_sane(token, value):
            logger.info(
                "Stablecoin pair price outside sanity band",
                token_id=token.id,
                pair_id=pair.pair.id,
                price=str(value),
            )
            return None
        return value

    async def from_routing(self, ctx: ResolutionContext) -> Decimal | None:
        """Price through counterparts, most liquid pair first."""
        if ctx.depth >= self.max_route_depth:
            return None
        token = await ctx.token()
        if token is None:
            return None

        visited = ctx.child_visited()
        candidates = sorted(await ctx.pairs(), key=_liquidity_key, reverse=True)
        for pair in candidates:
            counterpart = pair.counterpart(token.id)
            if counterpart.id == token.id or counterpart.id in visited:
                continue
            if not reserves.is_active(*pair.reserves_for(token.id)):
                continue

            counterpart_price = await self._resolve(
                counterpart.id,
                self._routing_strategies,
                visited=visited,
                depth=ctx.depth + 1,
            )
            if counterpart_price <= 0:
                continue

            value = self._reserve_rate(pair, token) * counterpart_price
            if self.is_sane(token, value):
                return value
            logger.debug(
                "Routed price outside sanity band",
                token_id=token.id,
                via=counterpart.id,
                price=str(value),
            )
        return None

    async def from_oracle(self, ctx: ResolutionContext) -> Decimal | None:
        """Time-weighted price from the on-chain oracle.

        Recoverable oracle errors fall back to the same pair's reserves.
        """
        if self.oracle is None:
            return None
        token = await ctx.token()
        if token is None:
            return None

        stable_pairs = []
        other_pairs = []
        for pair in await ctx.pairs():
            counterpart = pair.counterpart(token.id)
            if counterpart.id == token.id:
                continue
            if self.is_stablecoin(counterpart):
                stable_pairs.append(pair)
            else:
                other_pairs.append(pair)
        stable_pairs.sort(key=_liquidity_key, reverse=True)
        other_pairs.sort(key=_liquidity_key, reverse=True)

        for pair in stable_pairs + other_pairs:
            counterpart = pair.counterpart(token.id)
            if self.is_stablecoin(counterpart):
                counterpart_price = await self.stablecoin_price(counterpart)
            else:
                counterpart_price = await self._known_price(counterpart)
            if counterpart_price is None:
                continue

            rate = await self._oracle_rate(pair, token, counterpart)
            if rate is None:
                continue

            value = rate * counterpart_price
            if self.is_sane(token, value):
                return value
        return None

    # Stablecoin pricing

    async def stablecoin_price(self, stablecoin: Token) -> Decimal:
        """Market price of a stablecoin.

        Uses a known price inside the band, then a price derived from the
        reference token's pair, and only then 1.0.
        """
        low, high = STABLECOIN_BAND
        known = await self._known_price(stablecoin)
        if known is not None and within_band(known, low, high, inclusive=True):
            return known

        derived = await self._reference_derived_price(stablecoin)
        if derived is not None and within_band(derived, low, high, inclusive=True):
            return derived

        logger.warning(
            "Stablecoin market price unavailable, assuming 1.0",
            token_id=stablecoin.id,
            symbol=stablecoin.symbol,
        )
        return ONE

    async def _reference_derived_price(self, stablecoin: Token) -> Decimal | None:
        try:
            reference = await self.tokens.get_token_by_symbol(
                self.reference_token_symbol
            )
            if reference is None or reference.id == stablecoin.id:
                return None
            reference_price = await self._known_price(reference)
            if reference_price is None:
                return None
            pair = await self.pairs.find_pair_between(stablecoin.id, reference.id)
            if pair is None:
                return None
            if not reserves.is_active(*pair.reserves_for(stablecoin.id)):
                return None
            return self._reserve_rate(pair, stablecoin) * reference_price
        except (ReserveMathError, KeyError) as e:
            logger.debug(
                "Reference pricing failed", token_id=stablecoin.id, error=str(e)
            )
            return None

    # Internals

    async def _resolve(
        self,
        token_id: str,
        strategies: list[PriceStrategy],
        visited: frozenset[str] = frozenset(),
        depth: int = 0,
        cache_result: bool = True,
    ) -> Decimal:
        ctx = ResolutionContext(
            token_id, self.tokens, self.pairs, visited=visited, depth=depth
        )
        outcome = await self._runner.run(ctx, strategies)
        if outcome is None:
            logger.debug("Price unknown", token_id=token_id, depth=depth)
            return ZERO

        name, value = outcome
        if name == "persisted":
            await self.cache.set(CacheNamespace.PRICE, token_id, str(value))
        elif name in DERIVED_STRATEGIES:
            await self._record(token_id, value, cache_result)
        return value

    async def _record(self, token_id: str, value: Decimal, cache_result: bool) -> None:
        if cache_result:
            await self.cache.set(CacheNamespace.PRICE, token_id, str(value))
        try:
            await self.tokens.update_token_price(
                token_id, str(value), int(self._now_fn())
            )
        except Exception as e:
            logger.warning(
                "Failed to persist token price", token_id=token_id, error=str(e)
            )

    async def _known_price(self, token: Token) -> Decimal | None:
        """Cached or persisted price, without deriving anything."""
        cached = to_price(await self.cache.get(CacheNamespace.PRICE, token.id))
        if cached is not None:
            return cached
        return to_price(token.price_usd)

    def _reserve_rate(self, pair: PairWithTokens, token: Token) -> Decimal:
        """Whole counterpart units per whole ``token``."""
        counterpart = pair.counterpart(token.id)
        own_reserve, counterpart_reserve = pair.reserves_for(token.id)
        return reserves.price(
            own_reserve, token.decimals, counterpart_reserve, counterpart.decimals
        )

    async def _oracle_rate(
        self, pair: PairWithTokens, token: Token, counterpart: Token
    ) -> Decimal | None:
        address = pair.pair.address
        try:
            if not await self.oracle.is_pair_initialized(address):
                logger.debug("Oracle pair not initialized", pair_address=address)
                return None
            amount_out = await self.oracle.consult(
                address, token.address, 10**token.decimals, self.oracle_period
            )
            if amount_out <= 0:
                return None
            return reserves.to_decimal(amount_out, counterpart.decimals)
        except OracleError as e:
            if not e.recoverable:
                logger.warning(
                    "Oracle rejected query",
                    pair_address=address,
                    error_type=type(e).__name__,
                )
                return None
            logger.info(
                "Oracle unavailable for pair, using reserves",
                pair_address=address,
                error_type=type(e).__name__,
            )
            try:
                return self._reserve_rate(pair, token)
            except ReserveMathError:
                return None
        except Exception as e:
            logger.warning("Oracle call failed", pair_address=address, error=str(e))
            return None
