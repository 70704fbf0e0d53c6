"""
Tests for the Coinbase-compatible historical candle client.

Runs the client against a local aiohttp test server.
"""

from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp import test_utils

from dataflow.adapters.candle_source import CoinbaseCandleSource
from dataflow.errors import HistoricalSourceError, TransientNetworkError

END = 1704067200


@asynccontextmanager
async def serve(candles_handler=None, products=None):
    requests = []

    async def candles(request):
        requests.append(dict(request.query))
        if candles_handler is not None:
            return await candles_handler(request)
        return web.json_response([])

    async def product_list(request):
        return web.json_response(products or [])

    app = web.Application()
    app.router.add_get("/products/{product_id}/candles", candles)
    app.router.add_get("/products", product_list)

    server = test_utils.TestServer(app)
    await server.start_server()
    source = CoinbaseCandleSource(str(server.make_url("")), page_size=3)
    try:
        yield source, requests
    finally:
        await source.close()
        await server.close()


def rows(*timestamps):
    return [[ts, 1.0, 2.0, 1.5, 1.8, 10.0] for ts in timestamps]


class TestFetch:
    @pytest.mark.asyncio
    async def test_end_exclusive_maps_to_inclusive_bounds(self):
        async def handler(request):
            return web.json_response(rows(END, END - 60, END - 120, END - 180))

        async with serve(handler) as (source, requests):
            page = await source.fetch("BTC-USD", 60, END)

        assert requests[0] == {"granularity": "60", "start": str(END - 180), "end": str(END - 1)}
        assert [row[0] for row in page] == [END - 60, END - 120, END - 180]

    @pytest.mark.asyncio
    async def test_latest_page_without_end(self):
        async def handler(request):
            return web.json_response(rows(END - 120, END, END - 60, END - 180, END - 240))

        async with serve(handler) as (source, requests):
            page = await source.fetch("BTC-USD", 60)

        assert requests[0] == {"granularity": "60"}
        assert [row[0] for row in page] == [END, END - 60, END - 120]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status(self, status):
        async def handler(request):
            return web.Response(status=status, text="slow down")

        async with serve(handler) as (source, _):
            with pytest.raises(TransientNetworkError):
                await source.fetch("BTC-USD", 60, END)

    @pytest.mark.asyncio
    async def test_client_error_status(self):
        async def handler(request):
            return web.json_response({"message": "NotFound"}, status=404)

        async with serve(handler) as (source, _):
            with pytest.raises(HistoricalSourceError):
                await source.fetch("NOPE-USD", 60, END)

    @pytest.mark.asyncio
    async def test_unexpected_payload(self):
        async def handler(request):
            return web.json_response({"message": "weird"})

        async with serve(handler) as (source, _):
            with pytest.raises(HistoricalSourceError):
                await source.fetch("BTC-USD", 60, END)

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self):
        source = CoinbaseCandleSource("http://127.0.0.1:1", timeout=2.0)
        try:
            with pytest.raises(TransientNetworkError):
                await source.fetch("BTC-USD", 60, END)
        finally:
            await source.close()


class TestListProducts:
    @pytest.mark.asyncio
    async def test_filters_by_quote_and_status(self):
        products = [
            {"id": "BTC-USD", "quote_currency": "USD", "status": "online"},
            {"id": "OLD-USD", "quote_currency": "USD", "status": "offline"},
            {"id": "BAD-USD", "quote_currency": "USD", "status": "delisted"},
            {"id": "ETH-EUR", "quote_currency": "EUR", "status": "online"},
        ]

        async with serve(products=products) as (source, _):
            assert await source.list_products("USD") == ["BTC-USD", "OLD-USD"]
