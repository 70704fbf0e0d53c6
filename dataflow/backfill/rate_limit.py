"""
Request Rate Limiter

Async rate limiter enforcing a fixed minimum spacing between requests.
Safe for concurrent use by many backfill pairs.
"""

import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Spaces acquisitions at least 1 / requests_per_second apart.

    Waiters are served in arrival order; each reserves the next free slot
    under the lock and sleeps outside it.
    """

    def __init__(self, requests_per_second: Optional[float]):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Request ceiling; None or 0 disables limiting
        """
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second if requests_per_second else 0.0
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Acquire a slot for a request, waiting if necessary.

        Returns:
            Time waited in seconds (0 if no wait needed)
        """
        if self.min_interval <= 0:
            return 0.0

        async with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval

        wait_time = slot - now
        if wait_time > 0:
            logger.debug(f"Rate limit reached, waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)
        return wait_time
