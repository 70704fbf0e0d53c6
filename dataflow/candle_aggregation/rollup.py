"""
Rollup Engine

Derives coarser candles from finer stored candles along the interval DAG.

Two run modes:
- Incremental: every tick, rebuild the previous and current bucket of each
  target from its source rows, for all symbols
- Full rebuild: rebuild every bucket of a symbol from its whole source history,
  used once after a backfill

Within a group, rows are ordered by source bucket_start before merging: open
comes from the first row and close from the last, whatever order the rows
were written in.
"""

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from dataflow.candle_aggregation.clock import align, bucket_end, previous_bucket_start
from dataflow.errors import PersistenceError, UnknownIntervalMapping
from dataflow.persistence.gateway import PersistenceGateway
from engine.dag.builder import DAGBuilder, ROLLUP_SOURCES
from schemas.market_data import Candle

logger = logging.getLogger(__name__)

# Full rebuild reads whole source tables
_MIN_TS = -(2 ** 62)
_MAX_TS = 2 ** 62


def merge_group(symbol: str, target: int, bucket_start: int, rows: Sequence[Candle]) -> Candle:
    """
    Merge source candles that share one target bucket.

    Args:
        rows: Source candles, any order

    Returns:
        Target candle: first open, last close, max high, min low, summed volume
    """
    ordered = sorted(rows, key=lambda c: c.bucket_start)
    return Candle(
        symbol=symbol,
        interval=target,
        bucket_start=bucket_start,
        open=ordered[0].open,
        high=max(c.high for c in ordered),
        low=min(c.low for c in ordered),
        close=ordered[-1].close,
        volume=sum(c.volume for c in ordered),
    )


def aggregate_rows(rows: Iterable[Candle], target: int) -> List[Candle]:
    """
    Group source rows by (symbol, target bucket) and merge each group.

    Returns:
        Target candles ordered by symbol, then bucket_start
    """
    windows: Dict[tuple, List[Candle]] = {}
    for row in rows:
        windows.setdefault((row.symbol, align(row.bucket_start, target)), []).append(row)

    return [
        merge_group(symbol, target, bucket_start, group)
        for (symbol, bucket_start), group in sorted(windows.items())
    ]


class RollupEngine:
    """Rolls source interval rows up into every target of the DAG"""

    def __init__(
        self,
        gateway: PersistenceGateway,
        sources: Optional[Dict[int, int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.dag = DAGBuilder(sources if sources is not None else ROLLUP_SOURCES)
        self.dag.build()
        self.clock = clock

    @property
    def targets(self) -> List[int]:
        """Target intervals in rollup order"""
        return list(self.dag.topo_order)

    def _ordered(self, targets: Optional[Iterable[int]]) -> List[int]:
        if targets is None:
            return self.targets
        requested = list(targets)
        known = [t for t in self.dag.topo_order if t in requested]
        # Unknown targets go last so they fail after the valid ones ran
        return known + [t for t in requested if t not in known]

    async def rollup_window(self, target: int, now: Optional[float] = None) -> int:
        """
        Rebuild the previous and current bucket of one target for all symbols.

        Raises:
            UnknownIntervalMapping: If target has no source
            PersistenceError: If reading or writing fails

        Returns:
            Number of target candles written
        """
        source = self.dag.source_for(target)
        now = self.clock() if now is None else now

        start = previous_bucket_start(now, target)
        rows = await self.gateway.read_window(source, start, int(now))
        candles = aggregate_rows(rows, target)
        if candles:
            await self.gateway.upsert(candles)
        return len(candles)

    async def run_incremental(
        self, now: Optional[float] = None, targets: Optional[Iterable[int]] = None
    ) -> Dict[int, int]:
        """
        Run one incremental tick over all targets.

        A failing target is logged and skipped; the others still run.

        Returns:
            Mapping of target interval -> candles written (failed targets omitted)
        """
        now = self.clock() if now is None else now
        written: Dict[int, int] = {}

        for target in self._ordered(targets):
            try:
                written[target] = await self.rollup_window(target, now)
            except UnknownIntervalMapping as e:
                logger.error(f"Rollup skipped: {e}")
            except PersistenceError as e:
                logger.error(f"{target}-minute rollup failed, retrying next tick: {e}")

        logger.debug(f"Incremental rollup wrote {written}")
        return written

    async def rebuild_target(self, symbol: str, target: int) -> int:
        """
        Rebuild every bucket of one target for one symbol from full source history.

        A leading target bucket that the source history only partly covers is
        left alone when the target table already has a row for it.

        Returns:
            Number of target candles written
        """
        source = self.dag.source_for(target)
        rows = await self.gateway.read_range(symbol, source, _MIN_TS, _MAX_TS)
        if not rows:
            return 0

        candles = aggregate_rows(rows, target)

        first = candles[0]
        if rows[0].bucket_start > first.bucket_start:
            existing = await self.gateway.read_range(
                symbol, target, first.bucket_start, bucket_end(first.bucket_start, target)
            )
            if existing:
                logger.debug(
                    f"{symbol}: keeping stored {target}-minute candle {first.bucket_start} "
                    f"(source history starts at {rows[0].bucket_start})"
                )
                candles = candles[1:]

        if candles:
            await self.gateway.upsert(candles)
        return len(candles)

    async def rebuild(self, symbol: str, targets: Optional[Iterable[int]] = None) -> Dict[int, int]:
        """
        Full rebuild of every target for a symbol, in DAG order.

        A failing target is logged; targets derived from it still run on
        whatever rows they have.

        Returns:
            Mapping of target interval -> candles written
        """
        written: Dict[int, int] = {}
        for target in self._ordered(targets):
            try:
                written[target] = await self.rebuild_target(symbol, target)
                logger.info(f"  {symbol}: {target}-minute candles rebuilt ({written[target]})")
            except UnknownIntervalMapping as e:
                logger.error(f"Rebuild skipped for {symbol}: {e}")
            except PersistenceError as e:
                logger.error(f"{target}-minute rebuild failed for {symbol}: {e}")
        return written

    async def rebuild_all(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, Dict[int, int]]:
        """
        Full rebuild for several symbols.

        Args:
            symbols: Symbols to rebuild; every symbol of the base interval when None
        """
        if symbols is None:
            found = set()
            for base in self.dag.base_intervals:
                found.update(await self.gateway.list_symbols(base))
            symbols = sorted(found)

        results = {}
        for symbol in symbols:
            logger.info(f"Rebuilding rollups for {symbol}...")
            results[symbol] = await self.rebuild(symbol)
        return results
