"""Core interfaces consumed by the pricing engine."""

from typing import Protocol, runtime_checkable

from .types import (
    MetricSnapshot,
    PairWithTokens,
    PriceSnapshot,
    Swap,
    Token,
    TokenSupply,
)


class TokenRepository(Protocol):
    """Token read/write access."""

    async def get_token(self, token_id: str) -> Token | None:
        """Get a token by id."""
        ...

    async def get_token_by_address(self, address: str) -> Token | None:
        """Get a token by contract address (case-insensitive)."""
        ...

    async def get_token_by_symbol(self, symbol: str) -> Token | None:
        """Get the first token with the given symbol."""
        ...

    async def get_tokens(self, token_ids: list[str]) -> list[Token]:
        """Get several tokens in one round trip; unknown ids are omitted."""
        ...

    async def list_token_ids(self) -> list[str]:
        """List all token ids."""
        ...

    async def update_token_price(
        self, token_id: str, price_usd: str, updated_at: int
    ) -> None:
        """Persist a token's USD price."""
        ...

    async def get_token_supply(self, token_id: str) -> TokenSupply | None:
        """Get supply figures for a token."""
        ...


class PairRepository(Protocol):
    """Pair read access."""

    async def get_pair(self, pair_id: str) -> PairWithTokens | None:
        """Get a pair with both tokens."""
        ...

    async def find_pairs_by_token(self, token_id: str) -> list[PairWithTokens]:
        """Find all pairs containing a token, most liquid first."""
        ...

    async def find_pair_between(
        self, token_a: str, token_b: str
    ) -> PairWithTokens | None:
        """Find a pair joining two tokens in either order."""
        ...

    async def list_pair_ids(self) -> list[str]:
        """List all pair ids."""
        ...


class SwapRepository(Protocol):
    """Swap read access."""

    async def find_swaps_by_pair(self, pair_id: str, from_timestamp: int) -> list[Swap]:
        """Find swaps of a pair at or after ``from_timestamp``."""
        ...


class SnapshotRepository(Protocol):
    """Historical snapshot read access."""

    async def find_metric_snapshots(
        self,
        entity: str,
        entity_id: str,
        metric_type: str,
        from_timestamp: int,
    ) -> list[MetricSnapshot]:
        """Find metric snapshots ordered by timestamp ascending."""
        ...

    async def find_price_snapshots(
        self, pair_id: str, from_timestamp: int | None = None, limit: int | None = None
    ) -> list[PriceSnapshot]:
        """Find pair price snapshots ordered by timestamp ascending.

        With ``from_timestamp`` None the most recent ``limit`` rows are returned.
        """
        ...


@runtime_checkable
class SharedCache(Protocol):
    """Shared external key/value cache."""

    async def get(self, key: str) -> str | None:
        """Get a serialized value."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Set a serialized value with expiry."""
        ...

    async def mget(self, keys: list[str]) -> list[str | None]:
        """Get several values in one round trip."""
        ...

    async def pipeline_set(self, items: list[tuple[str, str, int]]) -> None:
        """Set several (key, value, ttl) entries in one round trip."""
        ...

    async def scan(self, pattern: str) -> list[str]:
        """List keys matching a glob pattern."""
        ...

    async def delete(self, keys: list[str]) -> int:
        """Delete keys, returning how many existed."""
        ...


class PriceOracle(Protocol):
    """On-chain TWAP oracle."""

    async def is_pair_initialized(self, pair_address: str) -> bool:
        """Check whether the oracle tracks a pair."""
        ...

    async def consult(
        self, pair_address: str, token_address: str, amount_in: int, period: int
    ) -> int:
        """Return the time-weighted raw amount out for ``amount_in``.

        Raises:
            OracleError: One of its typed subclasses
        """
        ...
