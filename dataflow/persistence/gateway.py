"""
PostgreSQL Persistence Gateway

Atomic, idempotent batch access to the candle tables.

Storage layout:
- candles_{interval}  -> one table per interval, primary key (symbol, bucket_start)
- backfill_cursors    -> resumable backfill checkpoints, primary key (symbol, granularity)

Upserts replace whole rows (last write wins). Any max/min/sum merging is the
caller's job; replaying the same batch therefore leaves storage unchanged.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Dict, Iterable, List, Optional, Tuple

import asyncpg

from dataflow.candle_aggregation.clock import INTERVALS
from dataflow.errors import PersistenceError
from schemas.market_data import BackfillCursor, Candle

logger = logging.getLogger(__name__)

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

CURSOR_TABLE = "backfill_cursors"


def table_name(interval: int) -> str:
    """Table holding candles of one interval"""
    if interval not in INTERVALS:
        raise ValueError(f"Unsupported interval: {interval}")
    return f"candles_{interval}"


def _row_to_candle(row, interval: int) -> Candle:
    return Candle(
        symbol=row["symbol"],
        interval=interval,
        bucket_start=int(row["bucket_start"]),
        open=float(row["open"]),
        high=float(row["high"]),
        low=float(row["low"]),
        close=float(row["close"]),
        volume=float(row["volume"]),
    )


def _affected_rows(status: str) -> int:
    """Parse the row count out of a command status such as 'DELETE 12'"""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PersistenceGateway:
    """
    Reads and writes candles against PostgreSQL.

    Features:
    - All rows of one upsert commit in a single transaction or not at all
    - Writes to the same table are serialized in-process
    - Backfill checkpoints commit in the same transaction as their page
    """

    def __init__(
        self,
        db_url: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 60,
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.db_url = db_url
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout

        self._pool = pool
        self._table_locks: Dict[int, asyncio.Lock] = {interval: asyncio.Lock() for interval in INTERVALS}

        # Metrics
        self._rows_written = 0

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @property
    def rows_written(self) -> int:
        return self._rows_written

    async def connect(self) -> None:
        """Create the connection pool"""
        if self._pool is not None:
            return

        logger.info(f"Connecting to PostgreSQL at {self.db_url.split('@')[-1]}...")
        try:
            self._pool = await asyncpg.create_pool(
                self.db_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to connect to database: {e}") from e
        logger.info("Connected to PostgreSQL")

    async def close(self) -> None:
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection closed")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise PersistenceError("Database pool not initialised - call connect() first")
        return self._pool

    async def init_schema(self) -> None:
        """Create candle and checkpoint tables if they do not exist"""
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for interval in INTERVALS:
                        await conn.execute(
                            f"""
                            CREATE TABLE IF NOT EXISTS {table_name(interval)} (
                                symbol        TEXT             NOT NULL,
                                bucket_start  BIGINT           NOT NULL,
                                open          DOUBLE PRECISION NOT NULL,
                                high          DOUBLE PRECISION NOT NULL,
                                low           DOUBLE PRECISION NOT NULL,
                                close         DOUBLE PRECISION NOT NULL,
                                volume        DOUBLE PRECISION NOT NULL DEFAULT 0,
                                PRIMARY KEY (symbol, bucket_start)
                            )
                            """
                        )
                    await conn.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS {CURSOR_TABLE} (
                            symbol          TEXT        NOT NULL,
                            granularity     INTEGER     NOT NULL,
                            last_timestamp  BIGINT,
                            stored_count    BIGINT      NOT NULL DEFAULT 0,
                            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
                            PRIMARY KEY (symbol, granularity)
                        )
                        """
                    )
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to initialise schema: {e}") from e
        logger.info(f"Schema ready: {len(INTERVALS)} candle tables + {CURSOR_TABLE}")

    async def upsert(self, rows: List[Candle], cursor: Optional[BackfillCursor] = None) -> int:
        """
        Insert or replace candles, optionally with a backfill checkpoint.

        Rows may span several intervals. Everything commits in one transaction;
        on failure nothing is visible and PersistenceError is raised.

        Args:
            rows: Candles to write (replace semantics on (symbol, bucket_start))
            cursor: Checkpoint to store together with the rows

        Returns:
            Number of candle rows written
        """
        if not rows and cursor is None:
            return 0

        by_interval: Dict[int, List[Candle]] = {}
        for candle in rows:
            by_interval.setdefault(candle.interval, []).append(candle)
        for interval in by_interval:
            table_name(interval)

        pool = self._require_pool()

        try:
            async with AsyncExitStack() as stack:
                for interval in sorted(by_interval):
                    await stack.enter_async_context(self._table_locks[interval])

                async with pool.acquire() as conn:
                    async with conn.transaction():
                        for interval in sorted(by_interval):
                            await conn.executemany(
                                f"""
                                INSERT INTO {table_name(interval)}
                                    (symbol, bucket_start, open, high, low, close, volume)
                                VALUES ($1, $2, $3, $4, $5, $6, $7)
                                ON CONFLICT (symbol, bucket_start) DO UPDATE SET
                                    open = EXCLUDED.open,
                                    high = EXCLUDED.high,
                                    low = EXCLUDED.low,
                                    close = EXCLUDED.close,
                                    volume = EXCLUDED.volume
                                """,
                                [
                                    (
                                        candle.symbol,
                                        candle.bucket_start,
                                        candle.open,
                                        candle.high,
                                        candle.low,
                                        candle.close,
                                        candle.volume,
                                    )
                                    for candle in by_interval[interval]
                                ],
                            )

                        if cursor is not None:
                            await conn.execute(
                                f"""
                                INSERT INTO {CURSOR_TABLE}
                                    (symbol, granularity, last_timestamp, stored_count, updated_at)
                                VALUES ($1, $2, $3, $4, now())
                                ON CONFLICT (symbol, granularity) DO UPDATE SET
                                    last_timestamp = EXCLUDED.last_timestamp,
                                    stored_count = EXCLUDED.stored_count,
                                    updated_at = EXCLUDED.updated_at
                                """,
                                cursor.symbol,
                                cursor.granularity,
                                cursor.last_timestamp,
                                cursor.stored_count,
                            )
        except DB_ERRORS as e:
            logger.error(f"Upsert of {len(rows)} candles rolled back: {e}")
            raise PersistenceError(f"Upsert of {len(rows)} candles failed: {e}") from e

        self._rows_written += len(rows)
        logger.debug(f"Upserted {len(rows)} candles across intervals {sorted(by_interval)}")
        return len(rows)

    async def _fetch(self, query: str, *args) -> list:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except DB_ERRORS as e:
            raise PersistenceError(f"Query failed: {e}") from e

    async def read_range(self, symbol: str, interval: int, start: int, end: int) -> List[Candle]:
        """
        Read candles of one symbol with start <= bucket_start < end.

        Returns:
            Candles ordered by ascending bucket_start
        """
        rows = await self._fetch(
            f"""
            SELECT symbol, bucket_start, open, high, low, close, volume
            FROM {table_name(interval)}
            WHERE symbol = $1 AND bucket_start >= $2 AND bucket_start < $3
            ORDER BY bucket_start ASC
            """,
            symbol,
            start,
            end,
        )
        return [_row_to_candle(row, interval) for row in rows]

    async def read_window(self, interval: int, start: int, end: int) -> List[Candle]:
        """
        Read candles of every symbol with start <= bucket_start < end.

        Returns:
            Candles ordered by symbol, then ascending bucket_start
        """
        rows = await self._fetch(
            f"""
            SELECT symbol, bucket_start, open, high, low, close, volume
            FROM {table_name(interval)}
            WHERE bucket_start >= $1 AND bucket_start < $2
            ORDER BY symbol ASC, bucket_start ASC
            """,
            start,
            end,
        )
        return [_row_to_candle(row, interval) for row in rows]

    async def read_latest(self, symbol: str, interval: int, n: int) -> List[Candle]:
        """
        Read the n most recent candles of one symbol.

        Returns:
            Candles ordered by ascending bucket_start (oldest first)
        """
        rows = await self._fetch(
            f"""
            SELECT symbol, bucket_start, open, high, low, close, volume
            FROM {table_name(interval)}
            WHERE symbol = $1
            ORDER BY bucket_start DESC
            LIMIT $2
            """,
            symbol,
            n,
        )
        return [_row_to_candle(row, interval) for row in reversed(rows)]

    async def delete_older_than_rank(self, symbol: str, interval: int, keep_count: int) -> int:
        """
        Delete every row of a symbol ranked beyond the keep_count most recent.

        Returns:
            Number of rows deleted
        """
        table = table_name(interval)
        pool = self._require_pool()
        try:
            async with self._table_locks[interval]:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        status = await conn.execute(
                            f"""
                            DELETE FROM {table}
                            WHERE symbol = $1 AND bucket_start NOT IN (
                                SELECT bucket_start FROM {table}
                                WHERE symbol = $1
                                ORDER BY bucket_start DESC
                                LIMIT $2
                            )
                            """,
                            symbol,
                            keep_count,
                        )
        except DB_ERRORS as e:
            raise PersistenceError(f"Retention delete on {table} failed: {e}") from e
        return _affected_rows(status)

    async def list_symbols(self, interval: int) -> List[str]:
        """Distinct symbols stored for an interval"""
        rows = await self._fetch(
            f"SELECT DISTINCT symbol FROM {table_name(interval)} ORDER BY symbol"
        )
        return [row["symbol"] for row in rows]

    async def count(self, symbol: str, interval: int) -> int:
        """Number of stored rows for a symbol and interval"""
        rows = await self._fetch(
            f"SELECT COUNT(*) AS count FROM {table_name(interval)} WHERE symbol = $1",
            symbol,
        )
        return int(rows[0]["count"]) if rows else 0

    async def load_cursor(self, symbol: str, granularity: int) -> Optional[BackfillCursor]:
        """Read the backfill checkpoint of a pair, if any"""
        rows = await self._fetch(
            f"""
            SELECT symbol, granularity, last_timestamp, stored_count
            FROM {CURSOR_TABLE}
            WHERE symbol = $1 AND granularity = $2
            """,
            symbol,
            granularity,
        )
        if not rows:
            return None
        row = rows[0]
        last_timestamp = row["last_timestamp"]
        return BackfillCursor(
            symbol=row["symbol"],
            granularity=int(row["granularity"]),
            last_timestamp=int(last_timestamp) if last_timestamp is not None else None,
            stored_count=int(row["stored_count"]),
        )

    async def delete_cursors(self, pairs: Optional[Iterable[Tuple[str, int]]] = None) -> int:
        """
        Delete backfill checkpoints.

        Args:
            pairs: (symbol, granularity) pairs to delete; all when None

        Returns:
            Number of checkpoints deleted
        """
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    if pairs is None:
                        status = await conn.execute(f"DELETE FROM {CURSOR_TABLE}")
                        return _affected_rows(status)

                    deleted = 0
                    for symbol, granularity in pairs:
                        status = await conn.execute(
                            f"DELETE FROM {CURSOR_TABLE} WHERE symbol = $1 AND granularity = $2",
                            symbol,
                            granularity,
                        )
                        deleted += _affected_rows(status)
                    return deleted
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to delete backfill checkpoints: {e}") from e
