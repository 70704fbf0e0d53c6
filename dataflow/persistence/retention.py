"""
Retention Manager

Bounds table size by keeping only the most recent rows per (symbol, interval).
Runs every `every_ticks` aggregation ticks against the configured intervals.
"""

import logging
from typing import Dict, Optional, Sequence

from dataflow.persistence.gateway import PersistenceGateway

logger = logging.getLogger(__name__)


class RetentionManager:
    """Deletes rows ranked beyond the `keep` most recent by bucket_start"""

    def __init__(
        self,
        gateway: PersistenceGateway,
        keep: int = 2000,
        intervals: Sequence[int] = (1,),
        every_ticks: int = 12,
    ):
        if keep < 0:
            raise ValueError("keep must be >= 0")
        if every_ticks < 1:
            raise ValueError("every_ticks must be >= 1")

        self.gateway = gateway
        self.keep = keep
        self.intervals = list(intervals)
        self.every_ticks = every_ticks
        self._ticks = 0

    async def on_tick(self) -> Optional[Dict[int, int]]:
        """
        Count one aggregation tick and prune when the period is reached.

        Returns:
            Deleted rows per interval when a prune ran, otherwise None
        """
        self._ticks += 1
        if self._ticks % self.every_ticks != 0:
            return None
        return await self.prune()

    async def prune(self) -> Dict[int, int]:
        """
        Prune every configured interval now.

        Returns:
            Mapping of interval -> number of rows deleted
        """
        deleted: Dict[int, int] = {}
        for interval in self.intervals:
            total = 0
            for symbol in await self.gateway.list_symbols(interval):
                total += await self.gateway.delete_older_than_rank(symbol, interval, self.keep)
            deleted[interval] = total
            if total:
                logger.info(f"Retention: removed {total} rows from {interval}-minute candles (keep={self.keep})")
        return deleted
