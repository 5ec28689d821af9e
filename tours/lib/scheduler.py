"""Clock + timer source for debounced and staggered background work.

Anything with ``now()`` and ``call_later(delay, callback)`` (returning a
handle with ``cancel()``) can stand in for ``LoopScheduler``; the tests use
a virtual clock that is advanced by hand.
"""

import asyncio
import time


class LoopScheduler:
    """Timers on the running asyncio loop, monotonic wall clock."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)
