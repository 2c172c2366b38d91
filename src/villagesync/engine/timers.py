"""Periodic timers — cancellable asyncio loops owned by the sync engine.

Each timer runs its async callback, then sleeps for its period.  A
failing callback is logged and the timer keeps going; nothing a timer
does is fatal to the session.  Timers are always cancelled by their
owner on teardown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

log = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class PeriodicTimer:
    """One named recurring callback.

    Args:
        name: Label used in logs.
        period: Seconds between the end of one run and the start of the next.
        callback: Async callable run each period.
        run_immediately: Run once right after ``start()`` instead of
            waiting a full period first.
    """

    def __init__(self, name: str, period: float, callback: TimerCallback,
                 run_immediately: bool = False) -> None:
        if period <= 0:
            raise ValueError(f"Timer {name!r} needs a positive period, got {period}")
        self.name = name
        self.period = period
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

        # --- Monitoring counters ---
        self.run_count: int = 0
        self.failure_count: int = 0
        self.last_run_duration_ms: float = 0.0

    def start(self) -> None:
        """Start the timer on the running loop. No-op if already running."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"timer:{self.name}")

    async def _run(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.period)
        while True:
            t0 = time.monotonic()
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failure_count += 1
                log.exception("Timer %s callback failed", self.name)
            self.run_count += 1
            self.last_run_duration_ms = (time.monotonic() - t0) * 1000
            await asyncio.sleep(self.period)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def cancel(self) -> None:
        """Stop the timer and wait until its task has finished."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class TimerGroup:
    """The set of timers belonging to one owner (e.g. a session)."""

    def __init__(self) -> None:
        self._timers: dict[str, PeriodicTimer] = {}

    def add(self, name: str, period: float, callback: TimerCallback,
            run_immediately: bool = False) -> PeriodicTimer:
        if name in self._timers:
            raise ValueError(f"Timer {name!r} already registered")
        timer = PeriodicTimer(name, period, callback, run_immediately)
        self._timers[name] = timer
        return timer

    def get(self, name: str) -> Optional[PeriodicTimer]:
        return self._timers.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._timers)

    @property
    def running(self) -> list[str]:
        return [name for name, t in self._timers.items() if t.is_running]

    def start_all(self) -> None:
        for timer in self._timers.values():
            timer.start()
        log.info("Timers started: %s", ", ".join(
            f"{t.name}={t.period:g}s" for t in self._timers.values()))

    async def cancel_all(self) -> None:
        for timer in self._timers.values():
            await timer.cancel()
        log.info("Timers cancelled: %d", len(self._timers))
