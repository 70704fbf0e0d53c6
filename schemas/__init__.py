"""
Candle Engine - Typed Message Catalog

Records flowing between the live feed, the aggregation engine and storage.
"""

from schemas.market_data import BackfillCursor, Candle, Trade, TIMEFRAME_LABELS

__all__ = [
    "BackfillCursor",
    "Candle",
    "Trade",
    "TIMEFRAME_LABELS",
]
