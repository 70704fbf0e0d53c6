"""
NATS Client Adapter

Provides async NATS client for the live trade feed and candle publication.
The initial connection is retried with capped exponential backoff; after a
bounded number of attempts the failure is treated as fatal.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Optional, Awaitable, Any
import nats
from nats.aio.client import Client as NatsConnection
from nats.aio.msg import Msg

from dataflow.errors import TransientNetworkError

logger = logging.getLogger(__name__)

# Seconds to wait before each connection attempt; the last tier repeats
CONNECT_BACKOFF = (0, 2, 4, 8, 16, 32, 60)


@dataclass
class NatsConfig:
    """NATS connection configuration"""
    servers: list[str] = field(default_factory=lambda: ["nats://localhost:4222"])
    name: str = "candle-engine"
    reconnect_time_wait: float = 2.0
    max_reconnect_attempts: int = 60
    ping_interval: int = 20
    max_outstanding_pings: int = 3
    connect_backoff: tuple = CONNECT_BACKOFF
    max_connect_attempts: int = 10

    @classmethod
    def from_env(cls, prefix: str = "NATS") -> "NatsConfig":
        """Create config from environment variables"""
        servers = os.getenv(f"{prefix}_SERVERS", "nats://localhost:4222")
        return cls(
            servers=servers.split(","),
            name=os.getenv(f"{prefix}_CLIENT_NAME", "candle-engine"),
            max_connect_attempts=int(os.getenv(f"{prefix}_MAX_CONNECT_ATTEMPTS", "10")),
        )


class NatsClient:
    """
    Async NATS client wrapper for the candle engine.

    Topic Patterns:
    - trades.raw.{symbol}         - Raw trades from the live feed
    - candles.{symbol}.{tf}       - Finalized candles
    """

    def __init__(self, config: Optional[NatsConfig] = None):
        self.config = config or NatsConfig()
        self._nc: Optional[NatsConnection] = None
        self._subscriptions: dict[str, Any] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Check if client is connected"""
        return self._connected and self._nc is not None and self._nc.is_connected

    def _backoff(self, attempt: int) -> float:
        tiers = self.config.connect_backoff
        return tiers[min(attempt, len(tiers) - 1)]

    async def connect(self) -> None:
        """
        Establish connection to NATS server.

        Raises:
            TransientNetworkError: If every connection attempt failed
        """
        if self._connected:
            return

        async def error_handler(e):
            logger.error(f"NATS error: {e}")

        async def closed_handler():
            logger.warning("NATS connection closed")
            self._connected = False

        async def reconnected_handler():
            logger.info("NATS reconnected")
            self._connected = True

        async def disconnected_handler():
            logger.warning("NATS disconnected")
            self._connected = False

        last_error: Optional[Exception] = None
        for attempt in range(self.config.max_connect_attempts):
            delay = self._backoff(attempt)
            if delay:
                logger.info(f"Retrying NATS connection in {delay}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)

            try:
                self._nc = await nats.connect(
                    servers=self.config.servers,
                    name=self.config.name,
                    reconnect_time_wait=self.config.reconnect_time_wait,
                    max_reconnect_attempts=self.config.max_reconnect_attempts,
                    ping_interval=self.config.ping_interval,
                    max_outstanding_pings=self.config.max_outstanding_pings,
                    error_cb=error_handler,
                    closed_cb=closed_handler,
                    reconnected_cb=reconnected_handler,
                    disconnected_cb=disconnected_handler,
                )
            except Exception as e:
                last_error = e
                logger.error(f"Failed to connect to NATS: {e}")
                continue

            self._connected = True
            logger.info(f"Connected to NATS: {self.config.servers}")
            return

        raise TransientNetworkError(
            f"Could not connect to NATS after {self.config.max_connect_attempts} attempts: {last_error}"
        )

    async def close(self) -> None:
        """Close NATS connection"""
        if self._nc:
            await self._nc.drain()
            await self._nc.close()
            self._connected = False
            logger.info("NATS connection closed")

    async def publish(self, subject: str, data: bytes) -> None:
        """
        Publish data to a NATS subject.

        Args:
            subject: NATS subject (e.g., "candles.BTC-USD.1m")
            data: Bytes payload (typically JSON)
        """
        if not self.is_connected:
            raise RuntimeError("NATS client not connected")
        await self._nc.publish(subject, data)
        logger.debug(f"Published to {subject}: {len(data)} bytes")

    async def publish_json(self, subject: str, data: str) -> None:
        """Publish JSON string to a NATS subject."""
        await self.publish(subject, data.encode("utf-8"))

    async def subscribe(
        self,
        subject: str,
        callback: Callable[[Msg], Awaitable[None]],
        queue: Optional[str] = None,
    ) -> None:
        """
        Subscribe to a NATS subject.

        Args:
            subject: NATS subject pattern (supports wildcards: *, >)
            callback: Async callback for received messages
            queue: Optional queue group for load balancing
        """
        if not self.is_connected:
            raise RuntimeError("NATS client not connected")

        if queue:
            sub = await self._nc.subscribe(subject, queue=queue, cb=callback)
        else:
            sub = await self._nc.subscribe(subject, cb=callback)

        self._subscriptions[subject] = sub
        logger.info(f"Subscribed to {subject}" + (f" (queue: {queue})" if queue else ""))

    async def unsubscribe(self, subject: str) -> None:
        """Unsubscribe from a subject"""
        if subject in self._subscriptions:
            await self._subscriptions[subject].unsubscribe()
            del self._subscriptions[subject]
            logger.info(f"Unsubscribed from {subject}")

    async def unsubscribe_all(self) -> None:
        """Stop every subscription so no further messages are delivered"""
        for subject in list(self._subscriptions):
            await self.unsubscribe(subject)


# Topic helpers
class Topics:
    """NATS topic name builders"""

    @staticmethod
    def _sanitize(name: str) -> str:
        """
        Sanitize a name for use in NATS topics.

        Segments keep alphanumerics, hyphens and underscores; anything else
        becomes an underscore.
        """
        return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)

    @staticmethod
    def trades_raw(symbol: str) -> str:
        """Raw trade topic for a symbol"""
        return f"trades.raw.{Topics._sanitize(symbol)}"

    @staticmethod
    def candles(symbol: str, timeframe: str) -> str:
        """Candle topic for a symbol and timeframe"""
        return f"candles.{Topics._sanitize(symbol)}.{timeframe}"

    @staticmethod
    def all_trades() -> str:
        """Subscribe to all trade symbols"""
        return "trades.raw.*"
