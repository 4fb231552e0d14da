"""Core data types for the pricing engine."""

from enum import Enum

from pydantic import BaseModel, Field


class Token(BaseModel):
    """Token record as stored by the repository."""

    id: str = Field(description="Token identifier")
    address: str = Field(description="Token contract address")
    decimals: int = Field(default=18, ge=0, le=255, description="Token decimals")
    symbol: str | None = Field(default=None, description="Token symbol")
    name: str | None = Field(default=None, description="Token name")
    price_usd: str | None = Field(
        default=None, description="Last persisted USD price (decimal string)"
    )
    last_price_update: int | None = Field(
        default=None, description="Unix timestamp of the last price write"
    )


class TokenSupply(BaseModel):
    """Supply figures for a token, in whole-token units."""

    token_id: str = Field(description="Token identifier")
    total: str | None = Field(default=None, description="Total supply")
    circulating: str | None = Field(default=None, description="Circulating supply")


class Pair(BaseModel):
    """Liquidity pair record."""

    id: str = Field(description="Pair identifier")
    address: str = Field(description="Pair contract address")
    token0_id: str = Field(description="Identifier of token0")
    token1_id: str = Field(description="Identifier of token1")
    reserve0: str = Field(default="0", description="Raw reserve of token0")
    reserve1: str = Field(default="0", description="Raw reserve of token1")
    reserve_usd: str | None = Field(default=None, description="Reserve value in USD")
    created_at: int = Field(default=0, description="Creation unix timestamp")
    volume_1h: str | None = Field(default=None, description="Stored 1h volume")
    volume_24h: str | None = Field(default=None, description="Stored 24h volume")
    volume_7d: str | None = Field(default=None, description="Stored 7d volume")
    volume_30d: str | None = Field(default=None, description="Stored 30d volume")
    tvl_usd: str | None = Field(default=None, description="Stored TVL in USD")
    pool_apr: float | None = Field(default=None, description="Stored pool APR")


class PairWithTokens(BaseModel):
    """Pair joined with both of its tokens."""

    pair: Pair
    token0: Token
    token1: Token

    def side_of(self, token_id: str) -> int:
        """Return 0 or 1 for the side ``token_id`` sits on."""
        if self.pair.token0_id == token_id:
            return 0
        if self.pair.token1_id == token_id:
            return 1
        raise KeyError(token_id)

    def counterpart(self, token_id: str) -> Token:
        """Return the token on the other side of ``token_id``."""
        return self.token1 if self.side_of(token_id) == 0 else self.token0

    def reserves_for(self, token_id: str) -> tuple[str, str]:
        """Return (own reserve, counterpart reserve) as raw strings."""
        if self.side_of(token_id) == 0:
            return self.pair.reserve0, self.pair.reserve1
        return self.pair.reserve1, self.pair.reserve0


class Swap(BaseModel):
    """Immutable swap event."""

    id: str = Field(description="Swap identifier")
    pair_id: str = Field(description="Pair the swap executed against")
    timestamp: int = Field(description="Unix timestamp in seconds")
    amount_in0: str = Field(default="0", description="Raw token0 amount in")
    amount_in1: str = Field(default="0", description="Raw token1 amount in")
    amount_out0: str = Field(default="0", description="Raw token0 amount out")
    amount_out1: str = Field(default="0", description="Raw token1 amount out")
    value_usd: str | None = Field(default=None, description="Precomputed USD value")


class PriceSnapshot(BaseModel):
    """Pair exchange-rate observation."""

    pair_id: str = Field(description="Pair identifier")
    timestamp: int = Field(description="Unix timestamp in seconds")
    price0: str | None = Field(default=None, description="token0 priced in token1")
    price1: str | None = Field(default=None, description="token1 priced in token0")


class MetricSnapshot(BaseModel):
    """Timestamped metric observation for any entity."""

    entity: str = Field(description="Entity kind (token, pair, protocol)")
    entity_id: str = Field(description="Entity identifier")
    metric_type: str = Field(description="Metric name, e.g. priceUSD")
    value: str | None = Field(default=None, description="Observed value")
    timestamp: int = Field(description="Unix timestamp in seconds")


class EntityKind(str, Enum):
    """Kinds of entities that carry metrics."""

    TOKEN = "token"
    PAIR = "pair"
    PROTOCOL = "protocol"


class EntityRef(BaseModel):
    """Reference to a metrics-bearing entity."""

    kind: EntityKind
    id: str


class ProtocolMetrics(BaseModel):
    """Protocol-wide metrics."""

    id: str = Field(default="protocol")
    timestamp: int = Field(default=0, description="Computation unix timestamp")
    total_value_locked_usd: float = 0.0
    volume_1h: float = 0.0
    daily_volume_usd: float = 0.0
    weekly_volume_usd: float = 0.0
    monthly_volume_usd: float = 0.0
    volume_1h_change: float = 0.0
    volume_24h_change: float = 0.0
    daily_fees_usd: float = 0.0
    total_pairs: int = 0
    active_pools_count: int = 0


class PairMetrics(BaseModel):
    """Metrics for a single pair."""

    id: str
    address: str = ""
    reserve_usd: float = 0.0
    tvl: float = 0.0
    volume_1h: float = 0.0
    volume_24h: float = 0.0
    volume_7d: float = 0.0
    volume_30d: float = 0.0
    volume_change_24h: float = 0.0
    volume_tvl_ratio: float = 0.0
    pool_apr: float = 0.0
    last_update: int = 0


class TokenMetrics(BaseModel):
    """Metrics for a single token."""

    id: str
    price_usd: float = 0.0
    price_change_24h: float | None = None
    volume_1h: float = 0.0
    volume_24h: float = 0.0
    volume_7d: float = 0.0
    volume_30d: float = 0.0
    volume_change_24h: float = 0.0
    tvl: float = 0.0
    market_cap: float = 0.0
    fdv: float = 0.0
    last_update: int = 0


class ChartPoint(BaseModel):
    """Single point of a chart series."""

    time: int = Field(description="Unix timestamp in seconds")
    value: float = Field(description="USD value")
