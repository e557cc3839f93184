"""Fixed-interval ticker with cooperative stop."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Ticker:
    """Runs an async callback on a fixed interval.

    At most one tick is in flight. A tick that overruns the interval delays
    the next one instead of overlapping it. ``stop()`` never interrupts a
    running tick: the loop exits once the current tick has finished.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval: float,
        name: str = "ticker",
    ):
        self.callback = callback
        self.interval = interval
        self.name = name
        self.ticks = 0
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Request a stop after the in-flight tick."""
        if not self._stop_event.is_set():
            logger.info(f"Stopping {self.name} after current tick")
        self._stop_event.set()

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick until stopped (or ``max_ticks`` have run)."""
        self._stop_event.clear()
        self._running = True
        logger.info(f"Starting {self.name} (interval: {self.interval}s)")
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                try:
                    await self.callback()
                except Exception as e:
                    logger.exception(f"{self.name} tick failed: {e}")
                self.ticks += 1

                if max_ticks is not None and self.ticks >= max_ticks:
                    break

                delay = max(0.0, self.interval - (time.monotonic() - started))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info(f"{self.name} stopped after {self.ticks} ticks")
