"""
Candle Aggregator

Builds OHLCV candles from live trades for multiple symbols and intervals.

Trades are pushed into a bounded queue by the feed callback and applied by a
single consumer task, so candle state is only ever mutated sequentially. Every
flush interval a copied snapshot of finalized and touched candles is handed to
the persistence gateway; the consumer keeps mutating the live candles while
the write is in flight.
"""

import asyncio
import dataclasses
import logging
import math
from typing import Dict, List, Optional, Sequence, Set, Tuple

from dataflow.adapters.nats_client import NatsClient, Topics
from dataflow.candle_aggregation.clock import align
from dataflow.errors import PersistenceError
from dataflow.persistence.gateway import PersistenceGateway
from schemas.market_data import Candle, Trade

logger = logging.getLogger(__name__)


class CandleBuilder:
    """Incremental OHLCV state for one (symbol, interval)"""

    def __init__(self, symbol: str, interval: int):
        self.symbol = symbol
        self.interval = interval
        self.current: Optional[Candle] = None

    def update(self, timestamp: float, price: float, size: float) -> Optional[Candle]:
        """
        Apply one trade.

        Returns:
            The previous candle when this trade opens a new bucket, else None
        """
        bucket_start = align(timestamp, self.interval)
        current = self.current

        if current is not None and bucket_start == current.bucket_start:
            current.high = max(current.high, price)
            current.low = min(current.low, price)
            current.close = price
            current.volume += size
            return None

        if current is not None and bucket_start < current.bucket_start:
            raise ValueError(
                f"Trade at {timestamp} precedes open {self.interval}m bucket "
                f"{current.bucket_start} for {self.symbol}"
            )

        self.current = Candle(
            symbol=self.symbol,
            interval=self.interval,
            bucket_start=bucket_start,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=size,
        )
        return current

    def snapshot(self) -> Optional[Candle]:
        """Copy of the open candle, safe to hand to another task"""
        if self.current is None:
            return None
        return dataclasses.replace(self.current)


class CandleAggregator:
    """
    Owns all live candle state for the process.

    Features:
    - Emit-on-rollover: exactly one finalized candle per bucket per key
    - Periodic snapshot flush with copy-on-handoff
    - Failed writes are re-queued and retried on the next flush
    - Graceful shutdown drains pending trades and flushes
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        intervals: Sequence[int] = (1,),
        flush_interval: float = 5.0,
        queue_size: int = 10000,
        nats_client: Optional[NatsClient] = None,
    ):
        self.gateway = gateway
        self.intervals = list(intervals)
        self.flush_interval = flush_interval
        self.nats = nats_client

        self._builders: Dict[Tuple[str, int], CandleBuilder] = {}
        self._finalized: List[Candle] = []
        self._touched: Set[Tuple[str, int]] = set()
        self._retry: List[Candle] = []

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._consumer_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None

        # Metrics
        self._trades_applied = 0
        self._late_trades = 0
        self._candles_flushed = 0

    def update(self, symbol: str, timestamp: float, price: float, size: float = 0.0) -> List[Candle]:
        """
        Apply one trade to every live interval of a symbol.

        Never suspends. Trades older than a key's open bucket are dropped.

        Returns:
            Candles finalized by this trade
        """
        if not (math.isfinite(timestamp) and math.isfinite(price) and math.isfinite(size)):
            logger.warning(f"Dropping trade with non-finite values: {symbol} ts={timestamp} price={price} size={size}")
            return []

        finalized = []

        for interval in self.intervals:
            key = (symbol, interval)
            builder = self._builders.get(key)
            if builder is None:
                builder = CandleBuilder(symbol, interval)
                self._builders[key] = builder

            try:
                closed = builder.update(timestamp, price, size)
            except ValueError as e:
                self._late_trades += 1
                logger.warning(f"Dropping out-of-order trade: {e}")
                continue

            self._touched.add(key)
            if closed is not None:
                finalized.append(closed)

        self._finalized.extend(finalized)
        self._trades_applied += 1
        return finalized

    def apply(self, trade: Trade) -> List[Candle]:
        """Apply a parsed trade"""
        return self.update(trade.symbol, trade.timestamp, trade.price, trade.size)

    def current(self, symbol: str, interval: int) -> Optional[Candle]:
        """Open candle of a key, if any"""
        builder = self._builders.get((symbol, interval))
        return builder.current if builder else None

    def drain_snapshot(self) -> List[Candle]:
        """
        Take ownership of everything that needs writing.

        Returns re-queued rows, finalized candles and copies of touched open
        candles, deduplicated by key with the newest state winning.
        """
        pending: Dict[tuple, Candle] = {}

        for candle in self._retry:
            pending[candle.key] = candle
        for candle in self._finalized:
            pending[candle.key] = candle
        for key in self._touched:
            snapshot = self._builders[key].snapshot()
            if snapshot is not None:
                pending[snapshot.key] = snapshot

        self._retry = []
        self._finalized = []
        self._touched = set()

        return sorted(pending.values(), key=lambda c: (c.interval, c.symbol, c.bucket_start))

    async def flush(self) -> int:
        """
        Write the current snapshot through the gateway.

        Returns:
            Number of candles written (0 when the write failed and was re-queued)
        """
        rows = self.drain_snapshot()
        if not rows:
            return 0

        try:
            written = await self.gateway.upsert(rows)
        except PersistenceError as e:
            logger.error(f"Failed to flush {len(rows)} candles, will retry: {e}")
            self._retry = rows + self._retry
            return 0
        except BaseException:
            # Cancelled mid-write: keep the rows for the final flush in stop()
            self._retry = rows + self._retry
            raise

        self._candles_flushed += written
        logger.debug(f"Flushed {written} candles (total: {self._candles_flushed})")
        return written

    async def submit(self, trade: Trade) -> None:
        """Queue a trade for the consumer, waiting if the queue is full"""
        await self._queue.put(trade)

    async def _handle_trade(self, msg) -> None:
        """Handle incoming trade message"""
        try:
            trade = Trade.from_json(msg.data.decode())
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to parse trade: {e}")
            return

        await self.submit(trade)

    async def _consume(self) -> None:
        """Apply queued trades one at a time"""
        while True:
            trade = await self._queue.get()
            try:
                finalized = self.apply(trade)
            except Exception as e:
                logger.error(f"Failed to apply trade {trade}: {e}", exc_info=True)
                continue
            finally:
                self._queue.task_done()

            for candle in finalized:
                await self._publish_candle(candle)

    async def _publish_candle(self, candle: Candle) -> None:
        """Publish a finalized candle to NATS"""
        if self.nats is None or not self.nats.is_connected:
            return

        topic = Topics.candles(candle.symbol, candle.timeframe)
        try:
            await self.nats.publish_json(topic, candle.to_json())
            logger.debug(
                f"Published candle: {candle.symbol} {candle.timeframe} "
                f"O={candle.open:.2f} H={candle.high:.2f} "
                f"L={candle.low:.2f} C={candle.close:.2f} V={candle.volume:.4f}"
            )
        except Exception as e:
            logger.error(f"Failed to publish candle: {e}")

    async def _periodic_flush(self) -> None:
        """Periodically flush snapshots"""
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    def _drain_queue(self) -> None:
        while True:
            try:
                trade = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                self.apply(trade)
            except Exception as e:
                logger.error(f"Failed to apply trade {trade}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        """Start the consumer and flush tasks, subscribing to trades if NATS is attached"""
        logger.info(f"Starting candle aggregator for intervals: {self.intervals}")
        self._consumer_task = asyncio.create_task(self._consume())
        self._flush_task = asyncio.create_task(self._periodic_flush())
        if self.nats is not None:
            await self.nats.subscribe(Topics.all_trades(), self._handle_trade)
        logger.info("Candle aggregator started")

    async def stop(self) -> None:
        """Stop tasks, apply pending trades and flush the final snapshot"""
        for task in (self._flush_task, self._consumer_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._flush_task = None
        self._consumer_task = None

        self._drain_queue()
        await self.flush()

        if self._retry:
            logger.error(f"Candle aggregator stopped with {len(self._retry)} unwritten candles")
        logger.info(
            f"Candle aggregator stopped. "
            f"Applied {self._trades_applied} trades, flushed {self._candles_flushed} candles"
        )

    def get_metrics(self) -> Dict[str, int]:
        """Aggregator statistics"""
        return {
            "keys": len(self._builders),
            "trades_applied": self._trades_applied,
            "late_trades": self._late_trades,
            "candles_flushed": self._candles_flushed,
            "queued_trades": self._queue.qsize(),
            "pending_retry": len(self._retry),
        }
