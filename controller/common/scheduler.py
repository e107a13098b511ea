"""
Fixed-Interval Loop Scheduler

Drives each facility's control tick at exact wall-clock boundaries,
accounting for tick execution time so the loop does not drift.

- Fires at interval boundaries (a 30s loop ticks at :00 and :30)
- A tick that overruns its timeout is abandoned and counted as skipped
- Missed boundaries are skipped, never queued up
- Drift and skip counters are exposed for the health endpoint

Usage:
    async def tick():
        await control_loop.tick()

    loop = ScheduledLoop(30.0, tick, name="facility-1", tick_timeout_s=20.0)
    await loop.start()
    ...
    loop.stop()
"""

import asyncio
import time
from typing import Awaitable, Callable

from common.logging_setup import get_service_logger

logger = get_service_logger("scheduler")

# Drift beyond this is a wall-clock jump (NTP sync, suspend), not lateness
CLOCK_JUMP_S = 30.0


class ScheduledLoop:
    """
    Precise interval scheduler with a bounded tick duration.

    Attributes:
        interval: Seconds between ticks
        callback: Async tick function
        tick_timeout_s: Upper bound for one tick (None = interval)
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        tick_timeout_s: float | None = None,
    ):
        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.tick_timeout_s = tick_timeout_s or interval_seconds

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None

        self._drift_total: float = 0
        self._skipped_count: int = 0
        self._timeout_count: int = 0
        self._execution_count: int = 0
        self._last_execution_time: float = 0
        self._last_drift_ms: float = 0

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """Stop the loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> bool:
        """
        Execute one tick within the timeout.

        Returns:
            True if the tick completed, False if it timed out or failed
        """
        start = time.time()
        try:
            await asyncio.wait_for(self.callback(), timeout=self.tick_timeout_s)
        except asyncio.TimeoutError:
            self._timeout_count += 1
            logger.warning(
                f"Loop '{self.name}' tick exceeded {self.tick_timeout_s:.1f}s, skipped",
                extra={"loop": self.name},
            )
            return False
        except Exception as e:
            logger.error(f"Loop '{self.name}' tick error: {e}", exc_info=True)
            return False
        finally:
            self._last_execution_time = time.time() - start

        self._execution_count += 1
        return True

    async def _run(self) -> None:
        """Main loop that fires the tick at exact intervals."""
        now = time.time()
        self._next_run = ((now // self.interval) + 1) * self.interval

        while self._running:
            sleep_duration = self._next_run - time.time()
            if sleep_duration > 0:
                try:
                    await asyncio.sleep(sleep_duration)
                except asyncio.CancelledError:
                    break

            if not self._running:
                break

            drift = time.time() - self._next_run
            if drift > CLOCK_JUMP_S:
                logger.info(f"Loop '{self.name}' clock jump detected ({drift:.0f}s), realigning")
                self._last_drift_ms = 0
            else:
                self._drift_total += max(0, drift)
                self._last_drift_ms = drift * 1000

            await self.run_once()

            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            # The first increment is the tick that just ran
            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Loop '{self.name}' skipped {skipped - 1} intervals "
                    f"(tick took {self._last_execution_time:.3f}s)"
                )

    def get_stats(self) -> dict:
        """Loop statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "execution_count": self._execution_count,
            "timeout_count": self._timeout_count,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }


class LoopGroup:
    """
    One ScheduledLoop per facility.

    Facilities share no state, so each gets an independent loop and the
    group only starts, stops and reports on them together.
    """

    def __init__(self):
        self._loops: dict[str, ScheduledLoop] = {}

    def add(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        tick_timeout_s: float | None = None,
    ) -> ScheduledLoop:
        loop = ScheduledLoop(interval_seconds, callback, name, tick_timeout_s)
        self._loops[name] = loop
        return loop

    async def start_all(self) -> None:
        for loop in self._loops.values():
            await loop.start()

    def stop_all(self) -> None:
        for loop in self._loops.values():
            loop.stop()

    def get(self, name: str) -> ScheduledLoop | None:
        return self._loops.get(name)

    def names(self) -> list[str]:
        return sorted(self._loops)

    def get_stats(self) -> dict:
        return {name: loop.get_stats() for name, loop in self._loops.items()}
