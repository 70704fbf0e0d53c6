"""
Shared test fixtures for the candle engine tests.

Provides an in-memory stand-in for the persistence gateway, scripted
historical sources and a recording fake of the asyncpg pool.
"""

import dataclasses
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from dataflow.errors import PersistenceError
from schemas.market_data import BackfillCursor, Candle


# 2024-01-01T00:00:00Z, a Monday
T0 = 1704067200


# =============================================================================
# Persistence fakes
# =============================================================================

class MemoryGateway:
    """In-memory implementation of the PersistenceGateway interface"""

    def __init__(self):
        self.tables: Dict[int, Dict[Tuple[str, int], Candle]] = {}
        self.cursors: Dict[Tuple[str, int], BackfillCursor] = {}
        self.upsert_calls: List[List[Candle]] = []
        self.fail_upserts = 0
        self.fail_reads = False
        self.rows_written = 0
        self.is_connected = True

    async def upsert(self, rows: List[Candle], cursor: Optional[BackfillCursor] = None) -> int:
        if self.fail_upserts:
            self.fail_upserts -= 1
            raise PersistenceError("simulated write failure")
        self.upsert_calls.append(list(rows))
        for candle in rows:
            table = self.tables.setdefault(candle.interval, {})
            table[(candle.symbol, candle.bucket_start)] = dataclasses.replace(candle)
        if cursor is not None:
            self.cursors[(cursor.symbol, cursor.granularity)] = dataclasses.replace(cursor)
        self.rows_written += len(rows)
        return len(rows)

    def _rows(self, interval: int) -> List[Candle]:
        if self.fail_reads:
            raise PersistenceError("simulated read failure")
        table = self.tables.get(interval, {})
        return [dataclasses.replace(c) for _, c in sorted(table.items())]

    async def read_range(self, symbol: str, interval: int, start: int, end: int) -> List[Candle]:
        return [
            c for c in self._rows(interval)
            if c.symbol == symbol and start <= c.bucket_start < end
        ]

    async def read_window(self, interval: int, start: int, end: int) -> List[Candle]:
        return [c for c in self._rows(interval) if start <= c.bucket_start < end]

    async def read_latest(self, symbol: str, interval: int, n: int) -> List[Candle]:
        rows = [c for c in self._rows(interval) if c.symbol == symbol]
        return rows[-n:] if n else []

    async def delete_older_than_rank(self, symbol: str, interval: int, keep_count: int) -> int:
        table = self.tables.get(interval, {})
        keys = sorted((k for k in table if k[0] == symbol), key=lambda k: k[1], reverse=True)
        doomed = keys[keep_count:]
        for key in doomed:
            del table[key]
        return len(doomed)

    async def list_symbols(self, interval: int) -> List[str]:
        return sorted({symbol for symbol, _ in self.tables.get(interval, {})})

    async def count(self, symbol: str, interval: int) -> int:
        if self.fail_reads:
            raise PersistenceError("simulated read failure")
        return sum(1 for s, _ in self.tables.get(interval, {}) if s == symbol)

    async def load_cursor(self, symbol: str, granularity: int) -> Optional[BackfillCursor]:
        cursor = self.cursors.get((symbol, granularity))
        return dataclasses.replace(cursor) if cursor else None

    async def delete_cursors(self, pairs: Optional[Iterable[Tuple[str, int]]] = None) -> int:
        if pairs is None:
            deleted = len(self.cursors)
            self.cursors.clear()
            return deleted
        deleted = 0
        for pair in pairs:
            if self.cursors.pop(tuple(pair), None) is not None:
                deleted += 1
        return deleted

    def stored(self, interval: int, symbol: str) -> List[Candle]:
        """Synchronous view of one symbol's rows, oldest first"""
        return [c for (s, _), c in sorted(self.tables.get(interval, {}).items()) if s == symbol]


class FakeTransaction:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn

    async def __aenter__(self):
        self.conn.events.append("begin")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.events.append("rollback" if exc_type else "commit")
        return False


class FakeConnection:
    """Records statements issued through an asyncpg-like connection"""

    def __init__(self):
        self.events: List[str] = []
        self.executed: List[Tuple[str, tuple]] = []
        self.executemany_calls: List[Tuple[str, list]] = []
        self.fetch_result: list = []
        self.execute_status = "INSERT 0 1"
        self.fail_on_executemany: Optional[int] = None
        self.error: Exception = OSError("connection reset")

    def transaction(self):
        return FakeTransaction(self)

    async def execute(self, query: str, *args):
        self.executed.append((query, args))
        return self.execute_status

    async def executemany(self, query: str, args: list):
        if self.fail_on_executemany is not None and len(self.executemany_calls) == self.fail_on_executemany:
            raise self.error
        self.executemany_calls.append((query, list(args)))

    async def fetch(self, query: str, *args):
        self.executed.append((query, args))
        return self.fetch_result


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.closed = False

    @asynccontextmanager
    async def _acquire(self):
        yield self.conn

    def acquire(self):
        return self._acquire()

    async def close(self):
        self.closed = True


# =============================================================================
# Historical source fakes
# =============================================================================

def make_history(start: int, count: int, granularity: int = 60) -> List[List[float]]:
    """Contiguous source rows [ts, low, high, open, close, volume], oldest first"""
    rows = []
    for i in range(count):
        base = 100.0 + i
        rows.append([start + i * granularity, base - 1.0, base + 2.0, base, base + 1.0, 1.0 + i])
    return rows


class FakeSource:
    """Serves pages from a fixed history following the end-exclusive contract"""

    def __init__(self, history: Dict[Tuple[str, int], Sequence[Sequence[float]]], page_size: int, now: int):
        self.history = {key: sorted(rows, key=lambda r: r[0]) for key, rows in history.items()}
        self.page_size = page_size
        self.now = now
        self.calls: List[Tuple[str, int, Optional[int]]] = []

    async def fetch(self, symbol: str, granularity: int, end_exclusive: Optional[int] = None):
        self.calls.append((symbol, granularity, end_exclusive))
        end = self.now if end_exclusive is None else end_exclusive
        start = end - granularity * self.page_size
        rows = [list(r) for r in self.history.get((symbol, granularity), []) if start <= r[0] < end]
        rows.sort(key=lambda r: r[0], reverse=True)
        return rows[: self.page_size]


class ScriptedSource:
    """
    Returns scripted pages in order, then empty pages.

    An exception instance in the script is raised instead of returned.
    """

    def __init__(self, script: Sequence):
        self.script = list(script)
        self.calls: List[Tuple[str, int, Optional[int]]] = []

    async def fetch(self, symbol: str, granularity: int, end_exclusive: Optional[int] = None):
        self.calls.append((symbol, granularity, end_exclusive))
        if not self.script:
            return []
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return [list(r) for r in item]


class FlakySource:
    """Wraps a source and raises a given error on selected call numbers (0-based)"""

    def __init__(self, inner, fail_on: Iterable[int], error: Exception):
        self.inner = inner
        self.fail_on = set(fail_on)
        self.error = error
        self.calls = 0

    async def fetch(self, symbol: str, granularity: int, end_exclusive: Optional[int] = None):
        call = self.calls
        self.calls += 1
        if call in self.fail_on:
            raise self.error
        return await self.inner.fetch(symbol, granularity, end_exclusive)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def gateway():
    """Empty in-memory gateway"""
    return MemoryGateway()


@pytest.fixture
def fake_conn():
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_conn):
    return FakePool(fake_conn)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


def candle(symbol: str, interval: int, bucket_start: int, o: float, h: float, l: float, c: float, v: float = 1.0) -> Candle:
    """Shorthand Candle constructor"""
    return Candle(symbol, interval, bucket_start, o, h, l, c, v)
