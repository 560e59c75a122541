"""
Fixed-interval background jobs with drop-on-overlap.

A ticker enqueues a tick every ``interval`` seconds into a queue that holds
at most one pending tick. If the job is still running and a tick is already
waiting, the new tick is dropped and logged instead of piling up.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.job = job
        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self._queue: "asyncio.Queue[None]" = asyncio.Queue(maxsize=1)
        self._ticker: Optional[asyncio.Task] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._work(), name=f"{self.name}-worker")
        self._ticker = asyncio.create_task(self._tick(), name=f"{self.name}-ticker")
        logger.info(f"Started {self.name} every {self.interval:g}s")

    async def stop(self) -> None:
        tasks = [t for t in (self._ticker, self._worker) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._ticker = self._worker = None
        logger.info(f"Stopped {self.name}")

    def trigger(self) -> bool:
        """Queue one run. Returns False when a run is already waiting."""
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self.skipped += 1
            logger.warning(f"{self.name}: previous tick still pending, skipping this one")
            return False
        return True

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.trigger()

    async def _work(self) -> None:
        while True:
            await self._queue.get()
            try:
                await self.job()
                self.runs += 1
            except Exception:
                self.failures += 1
                logger.exception(f"{self.name}: run failed, waiting for next tick")
