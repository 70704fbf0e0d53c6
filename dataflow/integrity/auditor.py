"""
Candle Integrity Auditor

Cross-checks the most recent stored candles against the historical source.
Fields are compared with a numeric tolerance because upstream recomputation
can differ in the last decimal. Mismatches are reported, never repaired.
"""

import asyncio
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from dataflow.adapters.candle_source import CoinbaseCandleSource, SUPPORTED_GRANULARITIES
from dataflow.backfill.collector import CandleSource
from dataflow.backfill.rate_limit import RateLimiter
from dataflow.candle_aggregation.clock import bucket_end
from dataflow.errors import HistoricalSourceError, TransientNetworkError
from dataflow.persistence.gateway import PersistenceGateway
from engine.config.loader import ConfigLoader
from schemas.market_data import Candle

logger = logging.getLogger(__name__)

FIELDS = ("open", "high", "low", "close", "volume")


@dataclass
class IntegrityMismatch:
    """One stored candle that disagrees with the source"""
    bucket_start: int
    field: str
    local: float
    remote: Optional[float]


@dataclass
class AuditReport:
    symbol: str
    interval: int
    checked: int = 0
    missing: int = 0
    skipped: bool = False
    mismatched_candles: int = 0
    details: List[IntegrityMismatch] = field(default_factory=list)

    @property
    def mismatches(self) -> int:
        """Candles that differ from the source or have no source counterpart"""
        return self.mismatched_candles + self.missing


def compare_candles(
    local: Candle, remote: Candle, rel_tolerance: float, abs_tolerance: float
) -> List[IntegrityMismatch]:
    """Field-by-field comparison of two candles within tolerance"""
    differences = []
    for name in FIELDS:
        a, b = getattr(local, name), getattr(remote, name)
        if not math.isclose(a, b, rel_tol=rel_tolerance, abs_tol=abs_tolerance):
            differences.append(IntegrityMismatch(local.bucket_start, name, a, b))
    return differences


class IntegrityAuditor:
    """Read-only comparison of stored candles with the source"""

    def __init__(
        self,
        gateway: PersistenceGateway,
        source: CandleSource,
        rows: int = 200,
        rel_tolerance: float = 1e-9,
        abs_tolerance: float = 1e-8,
        supported_granularities: Sequence[int] = SUPPORTED_GRANULARITIES,
        limiter: Optional[RateLimiter] = None,
    ):
        self.gateway = gateway
        self.source = source
        self.rows = rows
        self.rel_tolerance = rel_tolerance
        self.abs_tolerance = abs_tolerance
        self.supported_granularities = set(supported_granularities)
        self.limiter = limiter or RateLimiter(None)

    async def _fetch_remote(self, symbol: str, interval: int, start: int, end: int) -> Dict[int, Candle]:
        """Page the source backward until the range [start, end) is covered"""
        granularity = interval * 60
        remote: Dict[int, Candle] = {}
        cursor = end

        while cursor > start:
            await self.limiter.acquire()
            page = await self.source.fetch(symbol, granularity, cursor)
            if not page:
                break
            for row in page:
                candle = Candle.from_source_row(symbol, interval, row)
                remote[candle.bucket_start] = candle
            earliest = min(int(row[0]) for row in page)
            if earliest >= cursor:
                break
            cursor = earliest

        return remote

    async def audit_interval(self, symbol: str, interval: int) -> AuditReport:
        """
        Compare the latest stored candles of one interval with the source.

        Returns:
            Report with the number of differing and missing candles
        """
        report = AuditReport(symbol=symbol, interval=interval)

        if interval * 60 not in self.supported_granularities:
            logger.info(f"{symbol} {interval}m: source has no {interval * 60}s candles, skipping")
            report.skipped = True
            return report

        local = await self.gateway.read_latest(symbol, interval, self.rows)
        if not local:
            logger.info(f"{symbol} {interval}m: no local candles")
            report.skipped = True
            return report

        start = local[0].bucket_start
        end = bucket_end(local[-1].bucket_start, interval)
        remote = await self._fetch_remote(symbol, interval, start, end)
        if not remote:
            logger.info(f"{symbol} {interval}m: source returned no candles")
            report.skipped = True
            return report

        for candle in local:
            report.checked += 1
            counterpart = remote.get(candle.bucket_start)
            if counterpart is None:
                report.missing += 1
                report.details.append(IntegrityMismatch(candle.bucket_start, "missing", candle.close, None))
                continue
            differences = compare_candles(candle, counterpart, self.rel_tolerance, self.abs_tolerance)
            if differences:
                report.mismatched_candles += 1
                report.details.extend(differences)

        if report.mismatches:
            logger.warning(
                f"{symbol} {interval}m: {report.mismatches} of {report.checked} candles differ "
                f"({report.missing} missing at source)"
            )
        else:
            logger.info(f"{symbol} {interval}m: {report.checked} candles match")
        return report

    async def audit(self, symbols: Sequence[str], intervals: Sequence[int]) -> List[AuditReport]:
        """
        Audit every (symbol, interval) combination.

        A source failure skips that combination; the rest still run.
        """
        reports = []
        for symbol in symbols:
            for interval in intervals:
                try:
                    reports.append(await self.audit_interval(symbol, interval))
                except (TransientNetworkError, HistoricalSourceError) as e:
                    logger.error(f"{symbol} {interval}m: source query failed: {e}")
                    reports.append(AuditReport(symbol=symbol, interval=interval, skipped=True))
        return reports


async def main():
    """Main entry point"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = ConfigLoader(Path(os.getenv("CONFIG_DIR", "config"))).load()
    settings = config.integrity

    gateway = PersistenceGateway(config.database.url, min_size=1, max_size=2)
    source = CoinbaseCandleSource(config.backfill.base_url, page_size=config.backfill.page_size)
    auditor = IntegrityAuditor(
        gateway,
        source,
        rows=settings.rows,
        rel_tolerance=settings.rel_tolerance,
        abs_tolerance=settings.abs_tolerance,
        limiter=RateLimiter(config.backfill.requests_per_second),
    )

    try:
        await gateway.connect()
        reports = await auditor.audit(settings.symbols, settings.intervals)
        total = sum(r.mismatches for r in reports)
        logger.info(f"Integrity audit finished: {total} mismatched candles in {len(reports)} checks")
    finally:
        await source.close()
        await gateway.close()


if __name__ == "__main__":
    asyncio.run(main())
