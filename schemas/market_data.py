"""
Market Data Types

Core market data types used throughout the candle engine.
These types are used for NATS messaging and PostgreSQL persistence.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence, Union
import json
import math


TIMEFRAME_LABELS = {
    1: "1m",
    3: "3m",
    5: "5m",
    10: "10m",
    15: "15m",
    30: "30m",
    60: "1h",
    240: "4h",
    1440: "1d",
    10080: "1w",
}


def _parse_timestamp(value: Union[str, int, float, datetime]) -> float:
    """Normalize an ISO string, datetime or epoch value to epoch seconds"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()
    return float(value)


@dataclass
class Trade:
    """Single executed trade from the live feed"""
    symbol: str
    timestamp: float  # epoch seconds
    price: float
    size: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp,
            "price": self.price,
            "size": self.size,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Trade":
        """Create Trade from dictionary"""
        size = data.get("size")
        if size is None:
            size = data.get("volume")
        trade = cls(
            symbol=data["symbol"],
            timestamp=_parse_timestamp(data["timestamp"]),
            price=float(data["price"]),
            size=float(size or 0.0),
        )
        for name in ("timestamp", "price", "size"):
            if not math.isfinite(getattr(trade, name)):
                raise ValueError(f"Trade {name} must be finite: {getattr(trade, name)}")
        return trade

    @classmethod
    def from_json(cls, json_str: str) -> "Trade":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))


@dataclass
class Candle:
    """OHLCV candle for one (symbol, interval, bucket)"""
    symbol: str
    interval: int  # minutes
    bucket_start: int  # epoch seconds, aligned to the interval
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def timeframe(self) -> str:
        """Human readable interval label ('1m', '4h', '1w', ...)"""
        return TIMEFRAME_LABELS.get(self.interval, f"{self.interval}m")

    @property
    def key(self) -> tuple:
        """Primary key of the stored row"""
        return (self.interval, self.symbol, self.bucket_start)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "timeframe": self.timeframe,
            "bucket_start": self.bucket_start,
            "timestamp": datetime.fromtimestamp(self.bucket_start, tz=timezone.utc).isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Candle":
        """Create Candle from dictionary"""
        bucket_start = data.get("bucket_start")
        if bucket_start is None:
            bucket_start = _parse_timestamp(data["timestamp"])
        return cls(
            symbol=data["symbol"],
            interval=int(data["interval"]),
            bucket_start=int(bucket_start),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0.0)),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Candle":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_source_row(cls, symbol: str, interval: int, row: Sequence[float]) -> "Candle":
        """
        Create Candle from a historical source row.

        Source rows are ordered [timestamp, low, high, open, close, volume].
        """
        timestamp, low, high, open_, close, volume = row[:6]
        return cls(
            symbol=symbol,
            interval=interval,
            bucket_start=int(timestamp),
            open=float(open_),
            high=float(high),
            low=float(low),
            close=float(close),
            volume=float(volume),
        )


@dataclass
class BackfillCursor:
    """Resumable checkpoint for one (symbol, granularity) backfill pair"""
    symbol: str
    granularity: int  # seconds
    last_timestamp: Optional[int] = None  # exclusive end of the next page
    stored_count: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "symbol": self.symbol,
            "granularity": self.granularity,
            "last_timestamp": self.last_timestamp,
            "stored_count": self.stored_count,
        }
