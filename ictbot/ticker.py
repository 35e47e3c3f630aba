"""Fixed-interval scheduler for trading cycles.

A ``Ticker`` fires its callback on interval boundaries (e.g. every
quarter hour for M15).  A tick that arrives while the previous callback
is still running is skipped, never run concurrently.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("ictbot.ticker")


class Ticker:
    """Cancellable periodic runner.

    Args:
        interval_seconds: Seconds between ticks.
        callback: Coroutine function invoked on each tick.
        align: Fire on wall-clock multiples of the interval rather than
            relative to start.
        immediate: Fire once as soon as the ticker starts.
        name: Label used in log lines.
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        align: bool = True,
        immediate: bool = False,
        name: str = "ticker",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._align = align
        self._immediate = immediate
        self.name = name
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    def _delay(self) -> float:
        if not self._align:
            return self.interval_seconds
        return self.interval_seconds - (self._clock() % self.interval_seconds)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        """Schedule :meth:`run` on the running loop and return its task."""
        if self.running:
            return self._loop_task  # type: ignore[return-value]
        self._loop_task = asyncio.create_task(self.run(), name=f"ticker:{self.name}")
        return self._loop_task

    def stop(self) -> None:
        """Request the loop to exit; an in-flight callback is allowed to finish."""
        self._stop_event.set()

    async def run(self) -> None:
        """Tick until :meth:`stop` is called.

        A stop requested before the loop starts is honoured: no tick fires.
        """
        if self._stop_event.is_set():
            logger.info("Ticker '%s' stopped before start.", self.name)
            return
        logger.info("Ticker '%s' started (every %.0fs).", self.name, self.interval_seconds)
        if self._immediate:
            self._fire()
        try:
            while not self._stop_event.is_set():
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._delay())
                except asyncio.TimeoutError:
                    self._fire()
        finally:
            if self.busy:
                await asyncio.wait({self._current})  # type: ignore[arg-type]
            logger.info(
                "Ticker '%s' stopped after %d tick(s), %d skipped.",
                self.name, self.ticks, self.skipped,
            )

    # ── Ticks ────────────────────────────────────────────────────────────

    def _fire(self) -> None:
        if self.busy:
            self.skipped += 1
            logger.warning("Ticker '%s': previous cycle still running, tick skipped.", self.name)
            return
        self.ticks += 1
        self._current = asyncio.create_task(self._invoke())

    async def _invoke(self) -> None:
        try:
            await self._callback()
        except Exception:
            logger.exception("Ticker '%s': cycle raised.", self.name)
