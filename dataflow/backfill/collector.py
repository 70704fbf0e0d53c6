"""
Historical Candle Backfill

Walks a historical candle source backward in time for every
(symbol, granularity) pair, storing pages and a resumable checkpoint.

Per pair:
1. Resume from the stored checkpoint (or "now") with budget = cap - stored rows
2. Fetch the page ending at the cursor, rate limited and retried on
   transient failures
3. Empty or single-point pages shift the cursor back one page; too many in a
   row mean the start of history was reached
4. Data pages are stored together with the new checkpoint in one transaction

Pairs run concurrently up to a cap and share one rate limiter. When every
pair finished, a full rollup pass runs and the checkpoints are removed.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from dataflow.adapters.candle_source import CoinbaseCandleSource
from dataflow.backfill.rate_limit import RateLimiter
from dataflow.candle_aggregation.rollup import RollupEngine
from dataflow.errors import HistoricalSourceError, PersistenceError, TransientNetworkError
from dataflow.persistence.gateway import PersistenceGateway
from engine.config.loader import ConfigLoader
from schemas.market_data import BackfillCursor, Candle

logger = logging.getLogger(__name__)

DAILY_GRANULARITY = 86400


class CandleSource(Protocol):
    """Pull-based historical candle source"""

    async def fetch(
        self, symbol: str, granularity: int, end_exclusive: Optional[int] = None
    ) -> List[List[float]]:
        ...


class PageSignal(Enum):
    """Outcome of observing one fetched page"""
    DATA = "data"
    EMPTY = "empty"
    DEGENERATE = "degenerate"
    EXHAUSTED = "exhausted"


@dataclass
class PageWalk:
    """
    Backward paging state for one pair.

    Two independent counters track consecutive empty pages and consecutive
    single-point pages; a data page resets both.
    """
    granularity: int
    page_size: int
    empty_limit: int
    degenerate_limit: int
    end: Optional[int] = None
    empty_count: int = 0
    degenerate_count: int = 0

    def observe(self, page: Sequence[Sequence[float]], now: int) -> PageSignal:
        """
        Classify a page and advance the cursor.

        Args:
            page: Rows fetched for the current end
            now: Current time, used when no cursor has been set yet

        Returns:
            EXHAUSTED when a counter passed its limit, EMPTY/DEGENERATE when the
            walk shifted back a page, DATA when the page should be stored
        """
        if not page:
            self.empty_count += 1
            if self.empty_count > self.empty_limit:
                return PageSignal.EXHAUSTED
            self._shift_back(now)
            return PageSignal.EMPTY

        timestamps = [int(row[0]) for row in page]
        earliest, latest = min(timestamps), max(timestamps)

        if earliest == latest:
            self.degenerate_count += 1
            if self.degenerate_count > self.degenerate_limit:
                return PageSignal.EXHAUSTED
            self._shift_back(now)
            return PageSignal.DEGENERATE

        self.empty_count = 0
        self.degenerate_count = 0
        self.end = earliest
        return PageSignal.DATA

    def _shift_back(self, now: int) -> None:
        base = self.end if self.end is not None else now
        self.end = base - self.granularity * self.page_size


class PairStatus(Enum):
    SKIPPED = "skipped"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class PairResult:
    symbol: str
    granularity: int
    status: PairStatus
    collected: int = 0
    stored_before: int = 0
    error: Optional[str] = None


@dataclass
class BackfillReport:
    results: List[PairResult] = field(default_factory=list)
    rollup: Dict[str, Dict[int, int]] = field(default_factory=dict)

    @property
    def failed(self) -> List[PairResult]:
        return [r for r in self.results if r.status == PairStatus.FAILED]

    @property
    def collected(self) -> int:
        return sum(r.collected for r in self.results)


class BackfillCollector:
    """
    Resumable backward walk over a historical candle source.

    Example usage:
        collector = BackfillCollector(gateway, source, caps={60: 6000, 86400: 14000})
        report = await collector.run(["BTC-USD", "ETH-USD"])
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        source: CandleSource,
        caps: Dict[int, int],
        page_size: int = 300,
        requests_per_second: Optional[float] = 10,
        concurrency: int = 1,
        empty_page_limit: int = 5,
        daily_empty_page_limit: int = 2,
        degenerate_page_limit: int = 5,
        max_retries: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        rollup: Optional[RollupEngine] = None,
        limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        for granularity in caps:
            if granularity % 60 != 0:
                raise ValueError(f"Granularity {granularity}s is not a whole number of minutes")

        self.gateway = gateway
        self.source = source
        self.caps = dict(caps)
        self.page_size = page_size
        self.concurrency = max(1, concurrency)
        self.empty_page_limit = empty_page_limit
        self.daily_empty_page_limit = daily_empty_page_limit
        self.degenerate_page_limit = degenerate_page_limit
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.rollup = rollup
        self.limiter = limiter or RateLimiter(requests_per_second)
        self.clock = clock
        self._sleep = sleep

        self._pairs_total = 0
        self._pairs_done = 0
        self._rows_collected = 0
        self._started_at: Optional[float] = None

    def _empty_limit(self, granularity: int) -> int:
        if granularity == DAILY_GRANULARITY:
            return self.daily_empty_page_limit
        return self.empty_page_limit

    async def _fetch_page(self, symbol: str, granularity: int, end: Optional[int]) -> List[List[float]]:
        """
        Fetch one page with rate limiting and exponential backoff.

        Raises:
            TransientNetworkError: When every retry failed
        """
        for attempt in range(self.max_retries + 1):
            await self.limiter.acquire()
            try:
                return await self.source.fetch(symbol, granularity, end)
            except TransientNetworkError as e:
                if attempt >= self.max_retries:
                    raise
                delay = min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)
                logger.warning(
                    f"{symbol} {granularity}s: fetch failed ({e}), "
                    f"retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)
        raise TransientNetworkError(f"{symbol} {granularity}s: retries exhausted")

    async def collect_pair(self, symbol: str, granularity: int) -> PairResult:
        """
        Collect history for one pair until its cap or the start of history.

        Transient network and persistence failures end only this pair and
        leave its checkpoint in place.
        """
        interval = granularity // 60
        label = f"{symbol} - {interval}m"

        try:
            stored = await self.gateway.count(symbol, interval)
            cursor = await self.gateway.load_cursor(symbol, granularity)
        except PersistenceError as e:
            logger.error(f"{label}: cannot read progress: {e}")
            return PairResult(symbol, granularity, PairStatus.FAILED, error=str(e))

        budget = self.caps[granularity] - stored
        if budget <= 0:
            logger.info(f"{label}: {stored} candles already stored, nothing to collect")
            return PairResult(symbol, granularity, PairStatus.SKIPPED, stored_before=stored)

        walk = PageWalk(
            granularity=granularity,
            page_size=self.page_size,
            empty_limit=self._empty_limit(granularity),
            degenerate_limit=self.degenerate_page_limit,
            end=cursor.last_timestamp if cursor else None,
        )
        if walk.end is not None:
            logger.info(f"{label}: resuming before {walk.end}")
        logger.info(f"{label}: {stored} stored, collecting up to {budget}")

        collected = 0
        try:
            while collected < budget:
                page = await self._fetch_page(symbol, granularity, walk.end)
                signal = walk.observe(page, int(self.clock()))

                if signal == PageSignal.EXHAUSTED:
                    logger.info(f"{label}: start of history reached after {collected} candles")
                    break
                if signal == PageSignal.EMPTY:
                    logger.info(f"{label}: empty page ({walk.empty_count}), moving back to {walk.end}")
                    continue
                if signal == PageSignal.DEGENERATE:
                    logger.info(f"{label}: single-point page ({walk.degenerate_count}), moving back to {walk.end}")
                    continue

                newest_first = sorted(page, key=lambda row: row[0], reverse=True)
                keep = newest_first[: budget - collected]
                candles = [Candle.from_source_row(symbol, interval, row) for row in keep]
                checkpoint = BackfillCursor(
                    symbol=symbol,
                    granularity=granularity,
                    last_timestamp=min(c.bucket_start for c in candles),
                    stored_count=stored + collected + len(candles),
                )
                await self.gateway.upsert(candles, cursor=checkpoint)

                # Rows overwriting existing keys (e.g. live-built candles) do not spend the budget
                added = await self.gateway.count(symbol, interval) - stored - collected
                collected += added
                self._rows_collected += added
                logger.info(
                    f"{label}: stored {len(candles)} candles ({added} new) "
                    f"{checkpoint.last_timestamp}..{candles[0].bucket_start} ({collected}/{budget})"
                )
        except (TransientNetworkError, HistoricalSourceError, PersistenceError) as e:
            logger.error(f"{label}: aborted after {collected} candles: {e}")
            return PairResult(symbol, granularity, PairStatus.FAILED, collected, stored, str(e))

        logger.info(f"{label}: done, {collected} collected ({stored + collected} stored)")
        return PairResult(symbol, granularity, PairStatus.COMPLETE, collected, stored)

    async def _run_pair(self, semaphore: asyncio.Semaphore, symbol: str, granularity: int) -> PairResult:
        async with semaphore:
            result = await self.collect_pair(symbol, granularity)
        self._pairs_done += 1
        self._log_progress()
        return result

    def _log_progress(self) -> None:
        elapsed = time.monotonic() - self._started_at if self._started_at else 0.0
        pct = (self._pairs_done / self._pairs_total * 100) if self._pairs_total else 100.0
        logger.info(
            f"Progress: {pct:.2f}% ({self._pairs_done}/{self._pairs_total} pairs), "
            f"{self._rows_collected} candles collected, elapsed {elapsed:.0f}s"
        )

    async def run(self, symbols: Sequence[str], granularities: Optional[Sequence[int]] = None) -> BackfillReport:
        """
        Backfill every (symbol, granularity) pair.

        When no pair failed, runs the full rollup pass for the symbols and
        deletes the run's checkpoints; otherwise checkpoints stay for a later
        resumed run.
        """
        granularities = list(granularities or self.caps.keys())
        pairs = [(symbol, granularity) for symbol in symbols for granularity in granularities]

        self._pairs_total = len(pairs)
        self._pairs_done = 0
        self._rows_collected = 0
        self._started_at = time.monotonic()

        logger.info(f"Backfilling {len(symbols)} symbols x {len(granularities)} granularities")

        semaphore = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(
            *(self._run_pair(semaphore, symbol, granularity) for symbol, granularity in pairs)
        )
        report = BackfillReport(results=list(results))

        if report.failed:
            logger.warning(
                f"Backfill finished with {len(report.failed)} failed pairs; "
                f"checkpoints kept for resume"
            )
            return report

        if self.rollup is not None:
            logger.info("Rebuilding rollups from backfilled history...")
            report.rollup = await self.rollup.rebuild_all(symbols)

        deleted = await self.gateway.delete_cursors(pairs)
        logger.info(f"Backfill complete: {report.collected} candles, {deleted} checkpoints removed")
        return report


async def main():
    """Main entry point"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = ConfigLoader(Path(os.getenv("CONFIG_DIR", "config"))).load()
    settings = config.backfill

    gateway = PersistenceGateway(
        config.database.url,
        min_size=config.database.min_size,
        max_size=config.database.max_size,
        command_timeout=config.database.command_timeout,
    )
    source = CoinbaseCandleSource(settings.base_url, page_size=settings.page_size)

    try:
        await gateway.connect()
        await gateway.init_schema()

        symbols = settings.symbols or await source.list_products(settings.quote_currency)
        collector = BackfillCollector(
            gateway,
            source,
            caps=settings.caps,
            page_size=settings.page_size,
            requests_per_second=settings.requests_per_second,
            concurrency=settings.concurrency,
            empty_page_limit=settings.empty_page_limit,
            daily_empty_page_limit=settings.daily_empty_page_limit,
            degenerate_page_limit=settings.degenerate_page_limit,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
            rollup=RollupEngine(gateway, config.rollup.sources) if settings.run_rollup else None,
        )
        report = await collector.run(symbols)
        logger.info(
            f"Backfill report: {report.collected} candles, "
            f"{len(report.failed)} failed pairs of {len(report.results)}"
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        await source.close()
        await gateway.close()


if __name__ == "__main__":
    asyncio.run(main())
