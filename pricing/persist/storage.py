"""Repository storage on SQLite."""

from collections.abc import Iterable, Sequence
from typing import Any

import aiosqlite
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tokens (
        id TEXT PRIMARY KEY,
        address TEXT NOT NULL,
        decimals INTEGER NOT NULL DEFAULT 18,
        symbol TEXT,
        name TEXT,
        price_usd TEXT,
        last_price_update INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tokens_address ON tokens(lower(address))",
    "CREATE INDEX IF NOT EXISTS idx_tokens_symbol ON tokens(upper(symbol))",
    """
    CREATE TABLE IF NOT EXISTS token_supply (
        token_id TEXT PRIMARY KEY,
        total TEXT,
        circulating TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pairs (
        id TEXT PRIMARY KEY,
        address TEXT NOT NULL,
        token0_id TEXT NOT NULL,
        token1_id TEXT NOT NULL,
        reserve0 TEXT NOT NULL DEFAULT '0',
        reserve1 TEXT NOT NULL DEFAULT '0',
        reserve_usd TEXT,
        created_at INTEGER NOT NULL DEFAULT 0,
        volume_1h TEXT,
        volume_24h TEXT,
        volume_7d TEXT,
        volume_30d TEXT,
        tvl_usd TEXT,
        pool_apr REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pairs_token0 ON pairs(token0_id)",
    "CREATE INDEX IF NOT EXISTS idx_pairs_token1 ON pairs(token1_id)",
    """
    CREATE TABLE IF NOT EXISTS swaps (
        id TEXT PRIMARY KEY,
        pair_id TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        amount_in0 TEXT NOT NULL DEFAULT '0',
        amount_in1 TEXT NOT NULL DEFAULT '0',
        amount_out0 TEXT NOT NULL DEFAULT '0',
        amount_out1 TEXT NOT NULL DEFAULT '0',
        value_usd TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_swaps_pair_ts ON swaps(pair_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS price_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pair_id TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        price0 TEXT,
        price1 TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_price_snapshots_pair_ts
    ON price_snapshots(pair_id, timestamp)
    """,
    """
    CREATE TABLE IF NOT EXISTS metric_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        metric_type TEXT NOT NULL,
        value TEXT,
        timestamp INTEGER NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_metric_snapshots_lookup
    ON metric_snapshots(entity, entity_id, metric_type, timestamp)
    """,
)

_PAIR_COLUMNS = (
    "id, address, token0_id, token1_id, reserve0, reserve1, reserve_usd, "
    "created_at, volume_1h, volume_24h, volume_7d, volume_30d, tvl_usd, pool_apr"
)

# Most liquid first, newest first on ties.
_LIQUIDITY_ORDER = (
    "ORDER BY CAST(COALESCE(reserve_usd, '0') AS REAL) DESC, created_at DESC"
)


def _is_retryable_error(exception) -> bool:
    """Check if a database error is transient."""
    if isinstance(exception, aiosqlite.OperationalError):
        message = str(exception).lower()
        return "locked" in message or "busy" in message
    return False


_db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception(_is_retryable_error),
    reraise=True,
)


class SQLiteStorage(
    TokenRepository, PairRepository, SwapRepository, SnapshotRepository
):
    """SQLite-backed token, pair, swap and snapshot repositories."""

    def __init__(self, db_path: str = "pricing.sqlite") -> None:
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        logger.info("SQLite storage initialized", db_path=db_path)

    async def initialize(self) -> None:
        """Initialize database tables."""
        async with aiosqlite.connect(self.db_path) as db:
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()

        logger.info("Database tables initialized")

    # Low-level helpers

    @_db_retry
    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict | None:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    @_db_retry
    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(sql, params)
            await db.commit()

    @_db_retry
    async def _executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(sql, rows)
            await db.commit()

    # Tokens

    async def get_token(self, token_id: str) -> Token | None:
        row = await self._fetchone("SELECT * FROM tokens WHERE id = ?", (token_id,))
        return Token(**row) if row else None

    async def get_token_by_address(self, address: str) -> Token | None:
        row = await self._fetchone(
            "SELECT * FROM tokens WHERE lower(address) = lower(?) LIMIT 1", (address,)
        )
        return Token(**row) if row else None

    async def get_token_by_symbol(self, symbol: str) -> Token | None:
        row = await self._fetchone(
            "SELECT * FROM tokens WHERE upper(symbol) = upper(?) ORDER BY id LIMIT 1",
            (symbol,),
        )
        return Token(**row) if row else None

    async def get_tokens(self, token_ids: list[str]) -> list[Token]:
        if not token_ids:
            return []
        placeholders = ", ".join("?" for _ in token_ids)
        rows = await self._fetchall(
            f"SELECT * FROM tokens WHERE id IN ({placeholders})", list(token_ids)
        )
        return [Token(**row) for row in rows]

    async def list_token_ids(self) -> list[str]:
        rows = await self._fetchall("SELECT id FROM tokens ORDER BY id")
        return [row["id"] for row in rows]

    async def update_token_price(
        self, token_id: str, price_usd: str, updated_at: int
    ) -> None:
        await self._execute(
            "UPDATE tokens SET price_usd = ?, last_price_update = ? WHERE id = ?",
            (price_usd, updated_at, token_id),
        )
        logger.debug("Token price persisted", token_id=token_id, price_usd=price_usd)

    async def get_token_supply(self, token_id: str) -> TokenSupply | None:
        row = await self._fetchone(
            "SELECT * FROM token_supply WHERE token_id = ?", (token_id,)
        )
        return TokenSupply(**row) if row else None

    async def upsert_token(self, token: Token) -> None:
        """Insert or update a token."""
        await self._execute(
            """
            INSERT INTO tokens (id, address, decimals, symbol, name, price_usd,
                                last_price_update)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                address = excluded.address,
                decimals = excluded.decimals,
                symbol = excluded.symbol,
                name = excluded.name,
                price_usd = excluded.price_usd,
                last_price_update = excluded.last_price_update
            """,
            (
                token.id,
                token.address,
                token.decimals,
                token.symbol,
                token.name,
                token.price_usd,
                token.last_price_update,
            ),
        )

    async def upsert_token_supply(self, supply: TokenSupply) -> None:
        """Insert or update a token's supply figures."""
        await self._execute(
            """
            INSERT INTO token_supply (token_id, total, circulating)
            VALUES (?, ?, ?)
            ON CONFLICT(token_id) DO UPDATE SET
                total = excluded.total,
                circulating = excluded.circulating
            """,
            (supply.token_id, supply.total, supply.circulating),
        )

    # Pairs

    async def _with_tokens(self, rows: list[dict]) -> list[PairWithTokens]:
        token_ids = {row["token0_id"] for row in rows}
        token_ids |= {row["token1_id"] for row in rows}
        tokens = {t.id: t for t in await self.get_tokens(sorted(token_ids))}

        result = []
        for row in rows:
            pair = Pair(**row)
            token0 = tokens.get(pair.token0_id)
            token1 = tokens.get(pair.token1_id)
            if token0 is None or token1 is None:
                logger.warning("Pair references unknown token", pair_id=pair.id)
                continue
            result.append(PairWithTokens(pair=pair, token0=token0, token1=token1))
        return result

    async def get_pair(self, pair_id: str) -> PairWithTokens | None:
        rows = await self._fetchall(
            f"SELECT {_PAIR_COLUMNS} FROM pairs WHERE id = ?", (pair_id,)
        )
        pairs = await self._with_tokens(rows)
        return pairs[0] if pairs else None

    async def find_pairs_by_token(self, token_id: str) -> list[PairWithTokens]:
        rows = await self._fetchall(
            f"SELECT {_PAIR_COLUMNS} FROM pairs "
            f"WHERE token0_id = ? OR token1_id = ? {_LIQUIDITY_ORDER}",
            (token_id, token_id),
        )
        return await self._with_tokens(rows)

    async def find_pair_between(
        self, token_a: str, token_b: str
    ) -> PairWithTokens | None:
        rows = await self._fetchall(
            f"SELECT {_PAIR_COLUMNS} FROM pairs "
            "WHERE (token0_id = ? AND token1_id = ?) "
            f"OR (token0_id = ? AND token1_id = ?) {_LIQUIDITY_ORDER} LIMIT 1",
            (token_a, token_b, token_b, token_a),
        )
        pairs = await self._with_tokens(rows)
        return pairs[0] if pairs else None

    async def list_pair_ids(self) -> list[str]:
        rows = await self._fetchall("SELECT id FROM pairs ORDER BY id")
        return [row["id"] for row in rows]

    async def upsert_pair(self, pair: Pair) -> None:
        """Insert or update a pair."""
        data = pair.model_dump()
        columns = [c.strip() for c in _PAIR_COLUMNS.split(",")]
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        await self._execute(
            f"INSERT INTO pairs ({_PAIR_COLUMNS}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            [data[c] for c in columns],
        )

    # Swaps

    async def find_swaps_by_pair(self, pair_id: str, from_timestamp: int) -> list[Swap]:
        rows = await self._fetchall(
            "SELECT * FROM swaps WHERE pair_id = ? AND timestamp >= ? "
            "ORDER BY timestamp ASC",
            (pair_id, from_timestamp),
        )
        return [Swap(**row) for row in rows]

    async def insert_swaps(self, swaps: Iterable[Swap]) -> None:
        """Insert swaps; existing ids are left untouched."""
        await self._executemany(
            """
            INSERT OR IGNORE INTO swaps (id, pair_id, timestamp, amount_in0,
                amount_in1, amount_out0, amount_out1, value_usd)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    s.id,
                    s.pair_id,
                    s.timestamp,
                    s.amount_in0,
                    s.amount_in1,
                    s.amount_out0,
                    s.amount_out1,
                    s.value_usd,
                )
                for s in swaps
            ],
        )

    # Snapshots

    async def find_metric_snapshots(
        self,
        entity: str,
        entity_id: str,
        metric_type: str,
        from_timestamp: int,
    ) -> list[MetricSnapshot]:
        rows = await self._fetchall(
            """
            SELECT entity, entity_id, metric_type, value, timestamp
            FROM metric_snapshots
            WHERE entity = ? AND entity_id = ? AND metric_type = ? AND timestamp >= ?
            ORDER BY timestamp ASC, id ASC
            """,
            (entity, entity_id, metric_type, from_timestamp),
        )
        return [MetricSnapshot(**row) for row in rows]

    async def find_price_snapshots(
        self, pair_id: str, from_timestamp: int | None = None, limit: int | None = None
    ) -> list[PriceSnapshot]:
        columns = "pair_id, timestamp, price0, price1"
        if from_timestamp is None:
            rows = await self._fetchall(
                f"SELECT {columns} FROM price_snapshots WHERE pair_id = ? "
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
                (pair_id, -1 if limit is None else limit),
            )
            rows.reverse()
        else:
            rows = await self._fetchall(
                f"SELECT {columns} FROM price_snapshots "
                "WHERE pair_id = ? AND timestamp >= ? "
                "ORDER BY timestamp ASC, id ASC LIMIT ?",
                (pair_id, from_timestamp, -1 if limit is None else limit),
            )
        return [PriceSnapshot(**row) for row in rows]

    async def insert_price_snapshots(self, snapshots: Iterable[PriceSnapshot]) -> None:
        """Append pair price snapshots."""
        await self._executemany(
            "INSERT INTO price_snapshots (pair_id, timestamp, price0, price1) "
            "VALUES (?, ?, ?, ?)",
            [(s.pair_id, s.timestamp, s.price0, s.price1) for s in snapshots],
        )

    async def insert_metric_snapshots(
        self, snapshots: Iterable[MetricSnapshot]
    ) -> None:
        """Append metric snapshots."""
        await self._executemany(
            "INSERT INTO metric_snapshots (entity, entity_id, metric_type, value, "
            "timestamp) VALUES (?, ?, ?, ?, ?)",
            [
                (s.entity, s.entity_id, s.metric_type, s.value, s.timestamp)
                for s in snapshots
            ],
        )

    async def close(self) -> None:
        """Close storage (cleanup if needed)."""
        logger.info("Storage closed")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
