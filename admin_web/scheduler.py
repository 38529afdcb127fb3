"""
Cancellable timers for the session controller and the access guard.
AsyncioScheduler runs on the event loop against wall-clock time; ManualScheduler keeps a
virtual clock that tests move forward with advance().
"""
import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle:
    """Handle for one armed timer. cancel() is idempotent."""

    def __init__(self, on_cancel: Callable[[], None] | None = None):
        self.cancelled = False
        self._on_cancel = on_cancel

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class Scheduler(Protocol):
    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class RepeatingTimer(TimerHandle):
    """Fires callback every interval seconds until cancelled (first run after one interval)."""

    def __init__(self, scheduler: "Scheduler", interval: float, callback: Callable[[], None]):
        super().__init__()
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._current: TimerHandle | None = None
        self._arm()

    def _arm(self) -> None:
        self._current = self._scheduler.call_later(self._interval, self._fire)

    def _fire(self) -> None:
        if self.cancelled:
            return
        self._arm()
        self._callback()

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._current is not None:
            self._current.cancel()


class AsyncioScheduler:
    """Timers on the running asyncio loop; now() is epoch seconds."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(0.0, delay), callback)
        return TimerHandle(handle.cancel)

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        return RepeatingTimer(self, interval, callback)


class ManualScheduler:
    """
    Virtual clock. Nothing fires until advance() moves time past a timer's deadline;
    due timers fire in deadline order with now() set to their deadline.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        heapq.heappush(self._queue, (self._now + max(0.0, delay), next(self._seq), handle, callback))
        return handle

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        return RepeatingTimer(self, interval, callback)

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            callback()
        self._now = target

    def pending(self) -> int:
        """Number of armed, not yet cancelled timers."""
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)
