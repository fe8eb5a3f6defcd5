"""
Session clock: the asyncio task that drives ``MarketSession.advance()``.

Each tick's target wall-clock time is computed from the loop's start time
rather than accumulated from sleeps, so a slow tick never shifts the ones
after it. At most one loop is current; a loop whose captured epoch no longer
matches the session's exits without writing anything.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from services.market.session import MarketSession, TickReport

logger = logging.getLogger(__name__)

FATAL_MESSAGE = "The market has stopped because of a server error. An operator must restart the session."

TickCallback = Callable[[TickReport], Awaitable[None]]


class SessionClock:
    """Single writer of a ``MarketSession``."""

    def __init__(
        self,
        session: MarketSession,
        lock: asyncio.Lock,
        on_tick: Optional[TickCallback] = None,
        tick_interval: float = 1.0,
        max_batch_seconds: Optional[float] = None,
        time_fn: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.lock = lock
        self.on_tick = on_tick
        self.tick_interval = tick_interval
        self.max_batch_seconds = max_batch_seconds
        self.time_fn = time_fn
        self.sleep = sleep
        self.running = False
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def poll_interval(self) -> float:
        return min(self.tick_interval, 1.0)

    def is_current(self, epoch: int) -> bool:
        return self.running and self.session.epoch == epoch

    def start(self) -> int:
        """Begin a fresh epoch. Any loop from an earlier epoch becomes stale."""
        self.session.epoch += 1
        self.running = True
        self.last_error = None
        epoch = self.session.epoch
        self._task = asyncio.create_task(self.run(epoch), name=f"market-clock-{epoch}")
        logger.info("Market clock started, epoch %d", epoch)
        return epoch

    async def stop(self) -> None:
        """Ask the current loop to exit and wait for it to observe the request."""
        self.running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=self.poll_interval + 1.0)
        logger.info("Market clock stopped at tick %d (epoch %d)", self.session.tick, self.session.epoch)

    async def shutdown(self) -> None:
        self.running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_batch(self, max_ticks: int) -> int:
        """Scheduled-job mode: run up to ``max_ticks`` ticks in the current epoch.

        Meant for deployments without a background loop. Returns 0 when a loop
        or another batch is already driving the session.
        """
        if self.running:
            return 0
        self.running = True
        try:
            return await self.run(self.session.epoch, max_ticks=max_ticks)
        finally:
            if self._task is None:
                self.running = False

    async def run(self, epoch: int, max_ticks: Optional[int] = None) -> int:
        """Tick until stopped, superseded, or a batch bound is reached. Returns ticks run."""
        started = self.time_fn()
        count = 0
        while True:
            if not self.is_current(epoch):
                logger.info("Clock loop for epoch %d exiting (current epoch %d)", epoch, self.session.epoch)
                return count
            if max_ticks is not None and count >= max_ticks:
                return count
            if self.max_batch_seconds is not None and self.time_fn() - started >= self.max_batch_seconds:
                logger.info("Batch time bound reached after %d ticks", count)
                return count

            delay = started + count * self.tick_interval - self.time_fn()
            if delay > 0:
                await self.sleep(min(delay, self.poll_interval))
                continue

            async with self.lock:
                if not self.is_current(epoch):
                    continue
                try:
                    report = self.session.advance()
                    if self.on_tick is not None:
                        await self.on_tick(report)
                except Exception as e:
                    logger.exception("Market clock failed at tick %d", self.session.tick)
                    self.running = False
                    self.last_error = str(e)
                    self.session.closing_message = FATAL_MESSAGE
                    return count
            count += 1
            await self.sleep(0)
