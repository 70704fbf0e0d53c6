"""
Unit tests for the PostgreSQL persistence gateway.

The asyncpg pool is replaced by a recording fake; these tests check the
statements issued, transaction boundaries and error mapping.
"""

import asyncio

import pytest

from conftest import T0, candle
from dataflow.errors import PersistenceError
from dataflow.persistence.gateway import CURSOR_TABLE, PersistenceGateway, table_name
from schemas.market_data import BackfillCursor


@pytest.fixture
def pg(fake_pool):
    return PersistenceGateway("postgresql://user:secret@db:5432/candles", pool=fake_pool)


def row(symbol, bucket_start, o=1.0, h=2.0, l=0.5, c=1.5, v=3.0):
    return {"symbol": symbol, "bucket_start": bucket_start, "open": o, "high": h, "low": l, "close": c, "volume": v}


class TestTableName:
    def test_known_interval(self):
        assert table_name(240) == "candles_240"

    def test_unknown_interval(self):
        with pytest.raises(ValueError):
            table_name(7)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_groups_rows_by_interval_in_one_transaction(self, pg, fake_conn):
        rows = [
            candle("BTC-USD", 5, T0, 1, 2, 0.5, 1.5),
            candle("BTC-USD", 1, T0, 1, 2, 0.5, 1.5),
            candle("BTC-USD", 1, T0 + 60, 1.5, 2, 1, 1.2),
        ]

        assert await pg.upsert(rows) == 3

        assert fake_conn.events == ["begin", "commit"]
        queries = [q for q, _ in fake_conn.executemany_calls]
        assert "candles_1" in queries[0]
        assert "candles_5" in queries[1]
        assert "ON CONFLICT (symbol, bucket_start) DO UPDATE" in queries[0]
        assert "EXCLUDED.volume" in queries[0]
        assert len(fake_conn.executemany_calls[0][1]) == 2
        assert pg.rows_written == 3

    @pytest.mark.asyncio
    async def test_cursor_written_in_same_transaction(self, pg, fake_conn):
        cursor = BackfillCursor("BTC-USD", 60, last_timestamp=T0, stored_count=300)

        await pg.upsert([candle("BTC-USD", 1, T0, 1, 2, 0.5, 1.5)], cursor=cursor)

        assert fake_conn.events == ["begin", "commit"]
        query, args = fake_conn.executed[-1]
        assert CURSOR_TABLE in query
        assert args == ("BTC-USD", 60, T0, 300)

    @pytest.mark.asyncio
    async def test_failure_rolls_back_and_raises(self, pg, fake_conn):
        fake_conn.fail_on_executemany = 1
        rows = [candle("BTC-USD", 1, T0, 1, 2, 0.5, 1.5), candle("BTC-USD", 5, T0, 1, 2, 0.5, 1.5)]

        with pytest.raises(PersistenceError):
            await pg.upsert(rows)

        assert fake_conn.events == ["begin", "rollback"]
        assert pg.rows_written == 0

    @pytest.mark.asyncio
    async def test_timeout_maps_to_persistence_error(self, pg, fake_conn):
        fake_conn.fail_on_executemany = 0
        fake_conn.error = asyncio.TimeoutError()

        with pytest.raises(PersistenceError):
            await pg.upsert([candle("BTC-USD", 1, T0, 1, 2, 0.5, 1.5)])

    @pytest.mark.asyncio
    async def test_nothing_to_write(self, pg, fake_conn):
        assert await pg.upsert([]) == 0
        assert fake_conn.events == []

    @pytest.mark.asyncio
    async def test_unknown_interval_rejected_before_io(self, pg, fake_conn):
        with pytest.raises(ValueError):
            await pg.upsert([candle("BTC-USD", 7, T0, 1, 2, 0.5, 1.5)])
        assert fake_conn.events == []

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        gateway = PersistenceGateway("postgresql://localhost/candles")
        assert not gateway.is_connected
        with pytest.raises(PersistenceError):
            await gateway.upsert([candle("BTC-USD", 1, T0, 1, 2, 0.5, 1.5)])


class TestReads:
    @pytest.mark.asyncio
    async def test_read_range(self, pg, fake_conn):
        fake_conn.fetch_result = [row("BTC-USD", T0), row("BTC-USD", T0 + 60)]

        candles = await pg.read_range("BTC-USD", 1, T0, T0 + 120)

        query, args = fake_conn.executed[-1]
        assert "FROM candles_1" in query
        assert "ORDER BY bucket_start ASC" in query
        assert args == ("BTC-USD", T0, T0 + 120)
        assert [c.bucket_start for c in candles] == [T0, T0 + 60]
        assert candles[0].interval == 1

    @pytest.mark.asyncio
    async def test_read_latest_returns_oldest_first(self, pg, fake_conn):
        fake_conn.fetch_result = [row("BTC-USD", T0 + 120), row("BTC-USD", T0 + 60), row("BTC-USD", T0)]

        candles = await pg.read_latest("BTC-USD", 1, 3)

        query, args = fake_conn.executed[-1]
        assert "ORDER BY bucket_start DESC" in query
        assert args == ("BTC-USD", 3)
        assert [c.bucket_start for c in candles] == [T0, T0 + 60, T0 + 120]

    @pytest.mark.asyncio
    async def test_count_and_symbols(self, pg, fake_conn):
        fake_conn.fetch_result = [{"count": 42}]
        assert await pg.count("BTC-USD", 60) == 42

        fake_conn.fetch_result = [{"symbol": "BTC-USD"}, {"symbol": "ETH-USD"}]
        assert await pg.list_symbols(1) == ["BTC-USD", "ETH-USD"]

    @pytest.mark.asyncio
    async def test_load_cursor(self, pg, fake_conn):
        fake_conn.fetch_result = []
        assert await pg.load_cursor("BTC-USD", 60) is None

        fake_conn.fetch_result = [
            {"symbol": "BTC-USD", "granularity": 60, "last_timestamp": T0, "stored_count": 600}
        ]
        cursor = await pg.load_cursor("BTC-USD", 60)
        assert cursor == BackfillCursor("BTC-USD", 60, T0, 600)

    @pytest.mark.asyncio
    async def test_read_failure(self, pg, fake_conn):
        async def broken(query, *args):
            raise OSError("connection refused")

        fake_conn.fetch = broken
        with pytest.raises(PersistenceError):
            await pg.read_window(1, T0, T0 + 60)


class TestDeletes:
    @pytest.mark.asyncio
    async def test_delete_older_than_rank(self, pg, fake_conn):
        fake_conn.execute_status = "DELETE 7"

        assert await pg.delete_older_than_rank("BTC-USD", 1, 2000) == 7

        query, args = fake_conn.executed[-1]
        assert "DELETE FROM candles_1" in query
        assert "LIMIT $2" in query
        assert args == ("BTC-USD", 2000)
        assert fake_conn.events == ["begin", "commit"]

    @pytest.mark.asyncio
    async def test_delete_selected_cursors(self, pg, fake_conn):
        fake_conn.execute_status = "DELETE 1"

        deleted = await pg.delete_cursors([("BTC-USD", 60), ("BTC-USD", 300)])

        assert deleted == 2
        assert [args for _, args in fake_conn.executed] == [("BTC-USD", 60), ("BTC-USD", 300)]

    @pytest.mark.asyncio
    async def test_delete_all_cursors(self, pg, fake_conn):
        fake_conn.execute_status = "DELETE 5"
        assert await pg.delete_cursors() == 5


class TestSchema:
    @pytest.mark.asyncio
    async def test_init_schema_creates_every_table(self, pg, fake_conn):
        await pg.init_schema()

        statements = [q for q, _ in fake_conn.executed]
        assert len(statements) == 11
        assert all("CREATE TABLE IF NOT EXISTS" in q for q in statements)
        assert any("candles_10080" in q for q in statements)
        assert CURSOR_TABLE in statements[-1]

    @pytest.mark.asyncio
    async def test_close_releases_pool(self, pg, fake_pool):
        await pg.close()
        assert fake_pool.closed
        assert not pg.is_connected
