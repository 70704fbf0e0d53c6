"""
Periodic Executor

Runs an async job on a fixed interval in its own task. A failing run is
logged and the job is tried again on the next tick; cancellation stops it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicExecutor:
    """
    Drives one job every `interval` seconds.

    Example usage:
        executor = PeriodicExecutor("rollup", 5.0, engine.run_incremental)
        executor.start()
        ...
        await executor.stop()
    """

    def __init__(self, name: str, interval: float, job: Callable[[], Awaitable[object]]):
        self.name = name
        self.interval = interval
        self.job = job
        self._task: Optional[asyncio.Task] = None

        # Metrics
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        """Run the job once, logging instead of raising on failure"""
        try:
            await self.job()
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(f"{self.name} tick failed, retrying next tick: {e}", exc_info=True)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self) -> None:
        """Start ticking in a background task"""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info(f"Started {self.name} every {self.interval}s")

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish"""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info(f"Stopped {self.name} after {self.runs} runs ({self.failures} failed)")
