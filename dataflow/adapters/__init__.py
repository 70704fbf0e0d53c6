"""
Adapters

External collaborators: the NATS live trade feed and the historical
candle HTTP source.
"""

from dataflow.adapters.nats_client import NatsClient, NatsConfig
from dataflow.adapters.candle_source import CoinbaseCandleSource

__all__ = ["NatsClient", "NatsConfig", "CoinbaseCandleSource"]
