"""
Error Taxonomy

Exceptions raised by the aggregation, persistence and backfill layers.
Boundary signals of the backfill walk (empty or single-point pages) are not
errors and live in dataflow.backfill.collector.PageSignal.
"""


class CandleEngineError(Exception):
    """Base class for candle engine errors"""


class TransientNetworkError(CandleEngineError):
    """Feed or API call failed in a way that may succeed on retry"""


class HistoricalSourceError(CandleEngineError):
    """Historical source rejected a request (not retryable)"""


class PersistenceError(CandleEngineError):
    """A storage transaction failed and was rolled back"""


class UnknownIntervalMapping(CandleEngineError):
    """A rollup target interval has no configured source interval"""

    def __init__(self, interval: int):
        self.interval = interval
        super().__init__(f"No rollup source configured for {interval}-minute candles")
