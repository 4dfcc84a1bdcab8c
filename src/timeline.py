"""
Cooperative timer queue.

Everything the guard does runs on one thread: the application loop pumps the
browser, then calls run_due() to fire whatever timers have come due. There is
no parallelism, so timers never need locks; they need idempotent state checks.
"""

import heapq
import itertools
import logging
import math
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TimerHandle:
    """A scheduled callback. Repeating timers reschedule themselves."""

    __slots__ = ('due', 'callback', 'interval', 'cancelled', 'name')

    def __init__(self, due: float, callback: Callable[[], None],
                 interval: Optional[float] = None, name: str = ''):
        self.due = due
        self.callback = callback
        self.interval = interval
        self.cancelled = False
        self.name = name

    def cancel(self):
        self.cancelled = True

    def __repr__(self):
        state = 'cancelled' if self.cancelled else f'due={self.due:.3f}'
        return f"<TimerHandle {self.name or self.callback!r} {state}>"


class Timeline:
    """
    Single-threaded timer queue over an injectable clock.

    Callbacks that raise are logged and dropped; a failing callback never
    stops the loop or the remaining timers.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._heap = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[[], None], name: str = '') -> TimerHandle:
        """Run callback once, delay seconds from now."""
        handle = TimerHandle(self.now() + max(0.0, delay), callback, name=name)
        self._push(handle)
        return handle

    def call_every(self, interval: float, callback: Callable[[], None], name: str = '') -> TimerHandle:
        """Run callback every interval seconds, first run one interval from now."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        handle = TimerHandle(self.now() + interval, callback, interval=interval, name=name)
        self._push(handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]):
        if handle is not None:
            handle.cancel()

    def next_due(self) -> Optional[float]:
        """Due time of the earliest live timer, or None."""
        self._discard_cancelled()
        return self._heap[0][0] if self._heap else None

    def pending(self) -> int:
        return sum(1 for _, _, handle in self._heap if not handle.cancelled)

    def run_due(self) -> int:
        """Fire every timer whose due time has passed, in due order."""
        fired = 0
        now = self.now()
        while True:
            self._discard_cancelled()
            if not self._heap or self._heap[0][0] > now:
                break
            _, _, handle = heapq.heappop(self._heap)
            if handle.interval is not None:
                # Reschedule before running so the callback can cancel itself
                handle.due += handle.interval
                if handle.due <= now:
                    handle.due = now + handle.interval
                self._push(handle)
            fired += 1
            try:
                handle.callback()
            except Exception as e:
                logger.error(f"[Timeline] Timer {handle.name or handle.callback!r} failed: {e}")
        return fired

    def time_until_next(self, default: float) -> float:
        """Seconds until the next timer (capped at default), never negative."""
        due = self.next_due()
        if due is None or not math.isfinite(due):
            return default
        return max(0.0, min(default, due - self.now()))

    def _push(self, handle: TimerHandle):
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))

    def _discard_cancelled(self):
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
