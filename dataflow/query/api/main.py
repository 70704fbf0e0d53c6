"""
Query API

FastAPI service for reading stored candles.

HTTP Endpoints:
- GET  /              - Health check
- GET  /health        - Detailed health status
- GET  /candles/{symbol}/{interval}        - Latest candles with limit parameter
- GET  /candles/{symbol}/{interval}/range  - Candles with start <= bucket_start < end
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel
import uvicorn

from dataflow.candle_aggregation.clock import parse_interval
from dataflow.errors import PersistenceError
from dataflow.persistence.gateway import PersistenceGateway
from engine.config.loader import ConfigLoader
from schemas.market_data import Candle

logger = logging.getLogger(__name__)


MAX_LIMIT = 2000


# Response models (Pydantic)
class CandleResponse(BaseModel):
    """Single candle response"""
    symbol: str
    bucket_start: int
    timestamp: str  # ISO 8601
    timeframe: str
    open: float
    high: float
    low: float
    close: float
    volume: float


class CandlesResponse(BaseModel):
    """Response containing multiple candles"""
    symbol: str
    interval: int
    timeframe: str
    count: int
    candles: List[CandleResponse]


# Global persistence gateway
gateway: Optional[PersistenceGateway] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for the database connection"""
    global gateway

    logger.info("Starting Query API...")

    config = ConfigLoader(Path(os.getenv("CONFIG_DIR", "config"))).load()
    candidate = PersistenceGateway(
        config.database.url,
        min_size=config.database.min_size,
        max_size=config.database.max_size,
        command_timeout=config.database.command_timeout,
    )
    try:
        await candidate.connect()
        gateway = candidate
    except PersistenceError as e:
        logger.error(f"Failed to connect to database: {e}")
        gateway = None

    yield

    if gateway:
        await gateway.close()
        gateway = None
    logger.info("Query API shutdown complete")


app = FastAPI(
    title="Candle Engine - Query API",
    description="Query stored OHLCV candles",
    version="1.0.0",
    lifespan=lifespan,
)


def _resolve_interval(value: str) -> int:
    try:
        return parse_interval(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _require_gateway() -> PersistenceGateway:
    if gateway is None or not gateway.is_connected:
        raise HTTPException(status_code=503, detail="Database connection unavailable")
    return gateway


def _to_response(symbol: str, interval: int, candles: List[Candle]) -> CandlesResponse:
    items = [
        CandleResponse(
            symbol=c.symbol,
            bucket_start=c.bucket_start,
            timestamp=datetime.fromtimestamp(c.bucket_start, tz=timezone.utc).isoformat(),
            timeframe=c.timeframe,
            open=c.open,
            high=c.high,
            low=c.low,
            close=c.close,
            volume=c.volume,
        )
        for c in candles
    ]
    return CandlesResponse(
        symbol=symbol,
        interval=interval,
        timeframe=items[0].timeframe if items else str(interval),
        count=len(items),
        candles=items,
    )


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "status": "running",
        "service": "query-api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health")
async def health():
    """Detailed health status"""
    return {
        "status": "healthy",
        "service": "query-api",
        "database_connected": gateway is not None and gateway.is_connected,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/candles/{symbol}/{interval}")
async def get_candles(
    symbol: str,
    interval: str,
    limit: int = Query(default=100, ge=1, le=MAX_LIMIT, description="Number of candles to fetch"),
) -> CandlesResponse:
    """
    Fetch the last N candles for a symbol/interval.

    Args:
        symbol: Trading symbol (e.g., BTC-USD)
        interval: Minutes ("5") or label ("5m", "4h", "1d", "1w")
        limit: Number of candles to fetch (1-2000, default 100)

    Returns:
        CandlesResponse ordered by time descending (most recent first)

    Raises:
        400: Invalid interval
        404: No candles found
        503: Database unavailable
    """
    minutes = _resolve_interval(interval)
    symbol = symbol.upper()
    db = _require_gateway()

    try:
        candles = await db.read_latest(symbol, minutes, limit)
    except PersistenceError as e:
        logger.error(f"Database query failed: {e}")
        raise HTTPException(status_code=503, detail="Database query failed")

    if not candles:
        raise HTTPException(status_code=404, detail=f"No candles found for {symbol} {interval}")

    candles.reverse()
    logger.info(f"Fetched {len(candles)} candles for {symbol} {minutes}m (limit={limit})")
    return _to_response(symbol, minutes, candles)


@app.get("/candles/{symbol}/{interval}/range")
async def get_candle_range(
    symbol: str,
    interval: str,
    start: int = Query(..., description="Inclusive start, epoch seconds"),
    end: int = Query(..., description="Exclusive end, epoch seconds"),
) -> CandlesResponse:
    """
    Fetch candles with start <= bucket_start < end, oldest first.

    Raises:
        400: Invalid interval or empty range
        404: No candles found
        503: Database unavailable
    """
    minutes = _resolve_interval(interval)
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be greater than start")
    symbol = symbol.upper()
    db = _require_gateway()

    try:
        candles = await db.read_range(symbol, minutes, start, end)
    except PersistenceError as e:
        logger.error(f"Database query failed: {e}")
        raise HTTPException(status_code=503, detail="Database query failed")

    if not candles:
        raise HTTPException(
            status_code=404, detail=f"No candles found for {symbol} {interval} in [{start}, {end})"
        )

    return _to_response(symbol, minutes, candles)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", "8001"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Query API on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
