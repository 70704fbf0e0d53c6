"""
Bucket Clock

Maps a timestamp to the start of the candle bucket containing it.

Intervals up to one hour use fixed-modulo alignment. The 4h, 1d and 1w
intervals are wall-clock aligned in UTC: 4h buckets start at 00, 04, ..., 20h,
daily buckets at midnight and weekly buckets at Monday midnight.
"""

import math
from typing import Union

from schemas.market_data import TIMEFRAME_LABELS

INTERVALS = (1, 3, 5, 10, 15, 30, 60, 240, 1440, 10080)

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

# 1970-01-01 was a Thursday (Monday=0)
_EPOCH_WEEKDAY = 3

_LABEL_TO_INTERVAL = {label: interval for interval, label in TIMEFRAME_LABELS.items()}


def align(timestamp: Union[int, float], interval: int) -> int:
    """
    Get the bucket start for a timestamp.

    Args:
        timestamp: Epoch seconds (fractions are floored)
        interval: Bucket width in minutes, one of INTERVALS

    Returns:
        Epoch seconds of the aligned bucket start

    Raises:
        ValueError: If interval is not a supported bucket width
    """
    t = math.floor(timestamp)

    if interval == 240:
        hour_start = t - t % SECONDS_PER_HOUR
        return hour_start - hour_start % (4 * SECONDS_PER_HOUR)

    if interval == 1440:
        return t - t % SECONDS_PER_DAY

    if interval == 10080:
        days = t // SECONDS_PER_DAY
        weekday = (days + _EPOCH_WEEKDAY) % 7
        return (days - weekday) * SECONDS_PER_DAY

    if interval not in INTERVALS:
        raise ValueError(f"Unsupported interval: {interval} minutes. Must be one of {INTERVALS}")

    seconds = interval * 60
    return (t // seconds) * seconds


def bucket_end(bucket_start: int, interval: int) -> int:
    """Exclusive end of the bucket starting at bucket_start"""
    return bucket_start + interval * 60


def previous_bucket_start(timestamp: Union[int, float], interval: int) -> int:
    """Start of the bucket immediately before the one containing timestamp"""
    return align(align(timestamp, interval) - 1, interval)


def parse_interval(value: Union[str, int]) -> int:
    """
    Parse an interval given in minutes ("5", 5) or as a label ("5m", "4h", "1w").

    Raises:
        ValueError: If the value does not name a supported interval
    """
    if isinstance(value, int):
        interval = value
    else:
        text = value.strip().lower()
        if text in _LABEL_TO_INTERVAL:
            return _LABEL_TO_INTERVAL[text]
        try:
            interval = int(text)
        except ValueError:
            raise ValueError(
                f"Invalid interval '{value}'. Must be one of: {list(_LABEL_TO_INTERVAL.keys())}"
            )

    if interval not in INTERVALS:
        raise ValueError(f"Unsupported interval: {interval} minutes. Must be one of {INTERVALS}")
    return interval
