"""
Candle Engine - Main Entry Point

Starts the live aggregation service: subscribes to trades over NATS, builds
base candles, rolls them up and prunes old rows.
"""

import asyncio
import logging
import os
from pathlib import Path

from dataflow.adapters.nats_client import NatsClient, NatsConfig
from dataflow.persistence.gateway import PersistenceGateway
from engine.config.loader import ConfigLoader
from engine.runtime.coordinator import AggregationCoordinator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """
    Main entry point for the live aggregation service.

    Environment Variables:
        CONFIG_DIR: Config directory path (default: "config")
        DATABASE_URL: Overrides database.url from the config file
        NATS_SERVERS: NATS server URLs (default: "nats://localhost:4222")
        NATS_CLIENT_NAME: NATS client name (default: "candle-engine")
    """
    config_dir = Path(os.getenv("CONFIG_DIR", "config"))

    logger.info("=" * 60)
    logger.info("Candle Engine Starting")
    logger.info("=" * 60)
    logger.info(f"Config Directory: {config_dir}")

    config = ConfigLoader(config_dir).load()

    gateway = PersistenceGateway(
        config.database.url,
        min_size=config.database.min_size,
        max_size=config.database.max_size,
        command_timeout=config.database.command_timeout,
    )
    nats_client = NatsClient(NatsConfig.from_env())
    coordinator = None

    try:
        await gateway.connect()
        await gateway.init_schema()

        logger.info("Connecting to NATS...")
        await nats_client.connect()

        coordinator = AggregationCoordinator(config, gateway, nats_client)
        await coordinator.start()

        logger.info("=" * 60)
        logger.info("Candle engine running. Press Ctrl+C to stop")
        logger.info("=" * 60)

        while True:
            await asyncio.sleep(60)
            logger.info(f"Metrics: {coordinator.get_metrics()}")

    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        if coordinator is not None:
            await coordinator.stop()
        await nats_client.close()
        await gateway.close()

        logger.info("Candle engine stopped")


if __name__ == "__main__":
    asyncio.run(main())
