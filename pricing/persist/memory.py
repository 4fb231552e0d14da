"""In-memory repository storage."""

from collections import Counter
from collections.abc import Iterable
from decimal import Decimal, InvalidOperation

import structlog

from ..core.interfaces import (
    PairRepository,
    SnapshotRepository,
    SwapRepository,
    TokenRepository,
)
from ..core.types import (
    MetricSnapshot,
    Pair,
    PairWithTokens,
    PriceSnapshot,
    Swap,
    Token,
    TokenSupply,
)

logger = structlog.get_logger(__name__)


def _reserve_usd(pair: Pair) -> Decimal:
    try:
        return Decimal(pair.reserve_usd or "0")
    except (InvalidOperation, ValueError):
        return Decimal(0)


class InMemoryStore(
    TokenRepository, PairRepository, SwapRepository, SnapshotRepository
):
    """Dictionary-backed repositories with the same contracts as SQLite storage.

    ``calls`` counts repository reads and writes by method name.
    """

    def __init__(self) -> None:
        self.tokens: dict[str, Token] = {}
        self.supplies: dict[str, TokenSupply] = {}
        self.pairs: dict[str, Pair] = {}
        self.swaps: list[Swap] = []
        self.price_snapshots: list[PriceSnapshot] = []
        self.metric_snapshots: list[MetricSnapshot] = []
        self.calls: Counter[str] = Counter()

    # Seeding

    def add_token(self, token: Token) -> Token:
        self.tokens[token.id] = token
        return token

    def add_supply(self, supply: TokenSupply) -> None:
        self.supplies[supply.token_id] = supply

    def add_pair(self, pair: Pair) -> Pair:
        self.pairs[pair.id] = pair
        return pair

    def add_swaps(self, swaps: Iterable[Swap]) -> None:
        self.swaps.extend(swaps)

    def add_price_snapshots(self, snapshots: Iterable[PriceSnapshot]) -> None:
        self.price_snapshots.extend(snapshots)

    def add_metric_snapshots(self, snapshots: Iterable[MetricSnapshot]) -> None:
        self.metric_snapshots.extend(snapshots)

    # Tokens

    async def get_token(self, token_id: str) -> Token | None:
        self.calls["get_token"] += 1
        token = self.tokens.get(token_id)
        return token.model_copy() if token else None

    async def get_token_by_address(self, address: str) -> Token | None:
        self.calls["get_token_by_address"] += 1
        for token in self.tokens.values():
            if token.address.lower() == address.lower():
                return token.model_copy()
        return None

    async def get_token_by_symbol(self, symbol: str) -> Token | None:
        self.calls["get_token_by_symbol"] += 1
        for token_id in sorted(self.tokens):
            token = self.tokens[token_id]
            if (token.symbol or "").upper() == symbol.upper():
                return token.model_copy()
        return None

    async def get_tokens(self, token_ids: list[str]) -> list[Token]:
        self.calls["get_tokens"] += 1
        return [self.tokens[t].model_copy() for t in token_ids if t in self.tokens]

    async def list_token_ids(self) -> list[str]:
        return sorted(self.tokens)

    async def update_token_price(
        self, token_id: str, price_usd: str, updated_at: int
    ) -> None:
        self.calls["update_token_price"] += 1
        token = self.tokens.get(token_id)
        if token is None:
            logger.debug("Price update for unknown token", token_id=token_id)
            return
        self.tokens[token_id] = token.model_copy(
            update={"price_usd": price_usd, "last_price_update": updated_at}
        )

    async def get_token_supply(self, token_id: str) -> TokenSupply | None:
        return self.supplies.get(token_id)

    # Pairs

    def _join(self, pair: Pair) -> PairWithTokens | None:
        token0 = self.tokens.get(pair.token0_id)
        token1 = self.tokens.get(pair.token1_id)
        if token0 is None or token1 is None:
            return None
        return PairWithTokens(pair=pair, token0=token0, token1=token1)

    async def get_pair(self, pair_id: str) -> PairWithTokens | None:
        self.calls["get_pair"] += 1
        pair = self.pairs.get(pair_id)
        return self._join(pair) if pair else None

    async def find_pairs_by_token(self, token_id: str) -> list[PairWithTokens]:
        self.calls["find_pairs_by_token"] += 1
        matches = [
            p for p in self.pairs.values() if token_id in (p.token0_id, p.token1_id)
        ]
        matches.sort(key=lambda p: (_reserve_usd(p), p.created_at), reverse=True)
        return [joined for p in matches if (joined := self._join(p)) is not None]

    async def find_pair_between(
        self, token_a: str, token_b: str
    ) -> PairWithTokens | None:
        for pair in await self.find_pairs_by_token(token_a):
            if pair.counterpart(token_a).id == token_b:
                return pair
        return None

    async def list_pair_ids(self) -> list[str]:
        return sorted(self.pairs)

    # Swaps and snapshots

    async def find_swaps_by_pair(self, pair_id: str, from_timestamp: int) -> list[Swap]:
        self.calls["find_swaps_by_pair"] += 1
        return sorted(
            (
                s
                for s in self.swaps
                if s.pair_id == pair_id and s.timestamp >= from_timestamp
            ),
            key=lambda s: s.timestamp,
        )

    async def find_metric_snapshots(
        self,
        entity: str,
        entity_id: str,
        metric_type: str,
        from_timestamp: int,
    ) -> list[MetricSnapshot]:
        self.calls["find_metric_snapshots"] += 1
        return sorted(
            (
                s
                for s in self.metric_snapshots
                if s.entity == entity
                and s.entity_id == entity_id
                and s.metric_type == metric_type
                and s.timestamp >= from_timestamp
            ),
            key=lambda s: s.timestamp,
        )

    async def find_price_snapshots(
        self, pair_id: str, from_timestamp: int | None = None, limit: int | None = None
    ) -> list[PriceSnapshot]:
        self.calls["find_price_snapshots"] += 1
        rows = sorted(
            (s for s in self.price_snapshots if s.pair_id == pair_id),
            key=lambda s: s.timestamp,
        )
        if from_timestamp is None:
            return rows[-limit:] if limit else rows
        rows = [s for s in rows if s.timestamp >= from_timestamp]
        return rows[:limit] if limit else rows

    async def initialize(self) -> None:
        logger.info("Using in-memory storage")

    async def close(self) -> None:
        pass
