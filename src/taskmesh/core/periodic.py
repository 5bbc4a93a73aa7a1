"""Ticker driven background loops with a re-entrancy guard."""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger()


class PeriodicLoop:
    """Run ``tick`` every ``interval`` seconds until stopped.

    Each interval fires a tick without waiting for the previous one. A tick that
    fires while another is still in progress is skipped, never overlapped.
    Errors raised by a tick are logged and the loop carries on.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._tick = tick
        self._run_immediately = run_immediately
        self._busy = False
        self._stop = asyncio.Event()
        self._ticker: asyncio.Task | None = None
        self._in_flight: asyncio.Task | None = None

        self.ticks = 0
        self.skipped = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def busy(self) -> bool:
        return self._busy

    async def run_once(self) -> bool:
        """Run one tick now. Returns False if a tick was already in progress."""
        if self._busy:
            self.skipped += 1
            logger.debug("Skipping overlapping tick", loop=self.name)
            return False

        self._busy = True
        try:
            await self._tick()
            self.ticks += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.errors += 1
            logger.error("Periodic tick failed", loop=self.name, error=str(e))
        finally:
            self._busy = False
        return True

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._ticker = asyncio.create_task(self._run(), name=f"{self.name}-ticker")
        logger.info("Periodic loop started", loop=self.name, interval=self.interval)

    async def stop(self) -> None:
        """Cancel the ticker and any tick still in flight."""
        self._stop.set()
        for task in (self._ticker, self._in_flight):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._ticker = None
        self._in_flight = None
        logger.info("Periodic loop stopped", loop=self.name, ticks=self.ticks)

    async def _run(self) -> None:
        if not self._run_immediately:
            if await self._wait_or_stop():
                return
        while not self._stop.is_set():
            if self._busy:
                self.skipped += 1
                logger.debug("Skipping overlapping tick", loop=self.name)
            else:
                self._in_flight = asyncio.create_task(
                    self.run_once(), name=f"{self.name}-tick"
                )
            if await self._wait_or_stop():
                return

    async def _wait_or_stop(self) -> bool:
        """Sleep one interval. Returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            return True
        except TimeoutError:
            return False
