"""Debouncing on top of a replaceable timer."""

import asyncio
import heapq
import itertools
from typing import Callable, Hashable, Optional, Protocol


class TimerHandle(Protocol):
    """Handle returned by a timer; cancel() prevents the callback."""

    def cancel(self) -> None: ...


class Timer(Protocol):
    """Protocol for timers used by the debouncer."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopTimer:
    """Timer backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


class _ManualHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimer:
    """Timer driven by an explicit clock.

    Usage:
        timer = ManualTimer()
        debouncer = Debouncer(0.3, timer)
        debouncer.schedule("doc", callback)
        timer.advance(0.3)  # callback runs here
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, _ManualHandle]] = []
        self._counter = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualHandle(self.now + delay, callback)
        heapq.heappush(self._queue, (handle.due, next(self._counter), handle))
        return handle

    def advance(self, seconds: float) -> int:
        """Move the clock forward and fire due callbacks in order.

        Returns:
            Number of callbacks fired.
        """
        target = self.now + seconds
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            self.now = due
            if handle.cancelled:
                continue
            handle.callback()
            fired += 1
        self.now = target
        return fired

    @property
    def pending_count(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)


class Debouncer:
    """Coalesces repeated triggers per key into one call after a quiet period."""

    def __init__(self, delay: float, timer: Optional[Timer] = None) -> None:
        self.delay = delay
        self._timer: Timer = timer or LoopTimer()
        self._pending: dict[Hashable, TimerHandle] = {}

    def schedule(self, key: Hashable, callback: Callable[[], None]) -> None:
        """Schedule callback for key, replacing any pending one."""
        self.cancel(key)

        def fire() -> None:
            self._pending.pop(key, None)
            callback()

        self._pending[key] = self._timer.call_later(self.delay, fire)

    def cancel(self, key: Hashable) -> bool:
        handle = self._pending.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._pending):
            self.cancel(key)

    def is_pending(self, key: Hashable) -> bool:
        return key in self._pending
