"""
Candle Aggregation

Builds 1m candles from live trades and derives the coarser intervals
(3m, 5m, 10m, 15m, 30m, 1h, 4h, 1d, 1w) by rollup.
"""
