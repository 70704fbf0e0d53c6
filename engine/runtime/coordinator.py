"""
Aggregation Coordinator

Wires the live candle pipeline together:
    trades -> CandleAggregator -> PersistenceGateway -> RollupEngine -> RetentionManager

The aggregator flushes on its own timer; rollup runs on a second timer and
retention runs every N rollup ticks.
"""

import logging
from typing import Any, Dict, Optional

from dataflow.adapters.nats_client import NatsClient
from dataflow.candle_aggregation.aggregator import CandleAggregator
from dataflow.candle_aggregation.rollup import RollupEngine
from dataflow.persistence.gateway import PersistenceGateway
from dataflow.persistence.retention import RetentionManager
from ..config.loader import ServiceConfig
from ..scheduler.executor import PeriodicExecutor

logger = logging.getLogger(__name__)


class AggregationCoordinator:
    """
    Owns every long-running component of the live service.

    Example usage:
        gateway = PersistenceGateway(config.database.url)
        await gateway.connect()

        coordinator = AggregationCoordinator(config, gateway, nats_client)
        await coordinator.start()
        ...
        await coordinator.stop()
    """

    def __init__(
        self,
        config: ServiceConfig,
        gateway: PersistenceGateway,
        nats_client: Optional[NatsClient] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.nats = nats_client

        self.aggregator = CandleAggregator(
            gateway,
            intervals=config.aggregation.intervals,
            flush_interval=config.aggregation.flush_interval,
            queue_size=config.aggregation.queue_size,
            nats_client=nats_client,
        )
        self.rollup = RollupEngine(gateway, config.rollup.sources)
        self.retention: Optional[RetentionManager] = None
        if config.retention.enabled:
            self.retention = RetentionManager(
                gateway,
                keep=config.retention.keep,
                intervals=config.retention.intervals,
                every_ticks=config.retention.every_ticks,
            )

        self._rollup_timer = PeriodicExecutor("rollup", config.rollup.tick_interval, self.tick)

        missing = set(self.rollup.dag.base_intervals) - set(config.aggregation.intervals)
        if missing:
            logger.warning(f"Rollup base intervals {sorted(missing)} are not built live")

        logger.info(
            f"Coordinator initialized: live {config.aggregation.intervals}, "
            f"rollup order {self.rollup.targets}"
        )

    async def tick(self) -> None:
        """One rollup tick, followed by retention when due"""
        await self.rollup.run_incremental()
        if self.retention is not None:
            await self.retention.on_tick()

    async def start(self) -> None:
        """Start the aggregator and the rollup timer"""
        logger.info("Starting aggregation coordinator...")
        await self.aggregator.start()
        self._rollup_timer.start()
        logger.info("Aggregation coordinator started")

    async def stop(self) -> None:
        """
        Stop in dependency order: no new trades, final flush, final rollup.
        """
        logger.info("Stopping aggregation coordinator...")
        if self.nats is not None and self.nats.is_connected:
            await self.nats.unsubscribe_all()
        await self._rollup_timer.stop()
        await self.aggregator.stop()
        await self._rollup_timer.run_once()
        logger.info("Aggregation coordinator stopped")

    def get_metrics(self) -> Dict[str, Any]:
        """Coordinator statistics"""
        return {
            "aggregator": self.aggregator.get_metrics(),
            "rollup_ticks": self._rollup_timer.runs,
            "rollup_failures": self._rollup_timer.failures,
            "rows_written": self.gateway.rows_written,
        }
