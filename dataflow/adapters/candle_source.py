"""
Historical Candle Source

Async client for a Coinbase Exchange compatible candles endpoint.

Contract used by the backfill collector and the integrity auditor:
    fetch(symbol, granularity, end_exclusive) -> rows
where rows are [timestamp, low, high, open, close, volume], newest first,
at most page_size rows, all with timestamp < end_exclusive.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import aiohttp

from dataflow.errors import HistoricalSourceError, TransientNetworkError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.exchange.coinbase.com"

# Granularities (seconds) the endpoint serves natively
SUPPORTED_GRANULARITIES = (60, 300, 900, 3600, 21600, 86400)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class CoinbaseCandleSource:
    """
    Pull-based historical OHLCV pages.

    Maps the end-exclusive paging contract onto the endpoint's inclusive
    start/end query parameters.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        page_size: int = 300,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the client session and release resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_json(self, path: str, params: Optional[dict] = None):
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, params=params) as response:
                if response.status in RETRYABLE_STATUS:
                    raise TransientNetworkError(f"GET {path} returned HTTP {response.status}")
                if response.status != 200:
                    body = await response.text()
                    raise HistoricalSourceError(f"GET {path} returned HTTP {response.status}: {body[:200]}")
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"GET {path} failed: {e!r}") from e

    async def fetch(
        self, symbol: str, granularity: int, end_exclusive: Optional[int] = None
    ) -> List[List[float]]:
        """
        Fetch one page of candles ending before end_exclusive.

        Args:
            symbol: Product id (e.g. "BTC-USD")
            granularity: Candle width in seconds
            end_exclusive: Upper bound (epoch seconds); latest page when None

        Returns:
            Rows [timestamp, low, high, open, close, volume], newest first

        Raises:
            TransientNetworkError: Connection failure, timeout, 429 or 5xx
            HistoricalSourceError: Any other non-200 response or bad payload
        """
        params = {"granularity": str(granularity)}
        if end_exclusive is not None:
            params["start"] = str(end_exclusive - granularity * self.page_size)
            params["end"] = str(end_exclusive - 1)

        data = await self._get_json(f"/products/{symbol}/candles", params)
        if not isinstance(data, list):
            raise HistoricalSourceError(f"Unexpected candles payload for {symbol}: {str(data)[:200]}")

        rows = [list(row) for row in data if isinstance(row, (list, tuple)) and len(row) >= 6]
        if end_exclusive is not None:
            rows = [row for row in rows if row[0] < end_exclusive]
        rows.sort(key=lambda row: row[0], reverse=True)
        return rows[: self.page_size]

    async def list_products(
        self, quote_currency: str = "USD", statuses: Sequence[str] = ("online", "offline")
    ) -> List[str]:
        """
        List product ids quoted in a currency.

        Returns:
            Product ids whose status is one of statuses
        """
        data = await self._get_json("/products")
        products = [
            product["id"]
            for product in data
            if product.get("quote_currency") == quote_currency and product.get("status") in statuses
        ]
        logger.info(f"Found {len(products)} {quote_currency} products")
        return products
