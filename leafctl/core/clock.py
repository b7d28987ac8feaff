"""Injectable clock and timers.

Every timeout and interval in the connection manager and the adapter is
measured against a :class:`Clock`. Production code uses
:class:`AsyncioClock`; tests use :class:`VirtualClock`, which only moves when
told to and fires due timers ordered by due time, then creation order.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

T = TypeVar("T")

# Enough loop iterations for a chain of awaited futures to run to its next
# clock wait.
SETTLE_ITERATIONS = 50


class Timer(Protocol):
    @property
    def active(self) -> bool: ...

    def cancel(self) -> None: ...


class Clock(Protocol):
    def now(self) -> float: ...

    def create_one_shot(self, delay: float, callback: Callable[[], None]) -> Timer: ...

    def create_periodic(self, interval: float, callback: Callable[[], None]) -> Timer: ...

    async def sleep(self, delay: float) -> None: ...


class _LoopTimer:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        callback: Callable[[], None],
        interval: float | None = None,
    ) -> None:
        self._loop = loop
        self._callback = callback
        self._interval = interval
        self._due = loop.time() + delay
        self._active = True
        self._handle = loop.call_at(self._due, self._fire)

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        self._active = False
        self._handle.cancel()

    def _fire(self) -> None:
        if not self._active:
            return
        if self._interval is None:
            self._active = False
        else:
            self._due += self._interval
            self._handle = self._loop.call_at(self._due, self._fire)
        self._callback()


class AsyncioClock:
    """Wall-clock timers on the running event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def create_one_shot(self, delay: float, callback: Callable[[], None]) -> Timer:
        return _LoopTimer(asyncio.get_running_loop(), delay, callback)

    def create_periodic(self, interval: float, callback: Callable[[], None]) -> Timer:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return _LoopTimer(asyncio.get_running_loop(), interval, callback, interval=interval)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class _VirtualTimer:
    def __init__(
        self,
        due: float,
        seq: int,
        callback: Callable[[], None],
        interval: float | None,
    ) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.interval = interval
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        self._active = False

    def __lt__(self, other: _VirtualTimer) -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class VirtualClock:
    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[_VirtualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    @property
    def active_timer_count(self) -> int:
        return sum(1 for timer in self._queue if timer.active)

    def create_one_shot(self, delay: float, callback: Callable[[], None]) -> Timer:
        return self._schedule(max(delay, 0.0), callback, None)

    def create_periodic(self, interval: float, callback: Callable[[], None]) -> Timer:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._schedule(interval, callback, interval)

    async def sleep(self, delay: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        timer = self.create_one_shot(delay, wake)
        try:
            await future
        finally:
            timer.cancel()

    def advance(self, delta: float) -> int:
        """Move time forward, firing every timer that falls due. Returns the number fired."""
        if delta < 0:
            raise ValueError("cannot move a clock backwards")
        target = self._now + delta
        fired = 0
        while (timer := self._pop_due(target)) is not None:
            self._fire(timer)
            fired += 1
        self._now = target
        return fired

    async def run_for(self, delta: float) -> int:
        """Like :meth:`advance`, but lets the event loop run after each firing.

        Tasks woken by a timer get to schedule their next timer before later
        ones are considered, so a whole retry sequence can play out within
        one call.
        """
        if delta < 0:
            raise ValueError("cannot move a clock backwards")
        target = self._now + delta
        fired = 0
        await settle()
        while (timer := self._pop_due(target)) is not None:
            self._fire(timer)
            fired += 1
            await settle()
        self._now = target
        await settle()
        return fired

    def _schedule(self, delay: float, callback: Callable[[], None], interval: float | None) -> _VirtualTimer:
        timer = _VirtualTimer(self._now + delay, next(self._seq), callback, interval)
        heapq.heappush(self._queue, timer)
        return timer

    def _pop_due(self, target: float) -> _VirtualTimer | None:
        while self._queue:
            timer = self._queue[0]
            if not timer.active:
                heapq.heappop(self._queue)
                continue
            if timer.due > target:
                return None
            return heapq.heappop(self._queue)
        return None

    def _fire(self, timer: _VirtualTimer) -> None:
        self._now = timer.due
        if timer.interval is None:
            timer.cancel()
        else:
            timer.due += timer.interval
            heapq.heappush(self._queue, timer)
        timer.callback()


async def settle(iterations: int = SETTLE_ITERATIONS) -> None:
    for _ in range(iterations):
        await asyncio.sleep(0)


async def wait_for(
    clock: Clock,
    awaitable: Awaitable[T],
    timeout: float,
    on_timeout: Callable[[], Exception],
) -> T:
    """Await ``awaitable``, cancelling it and raising ``on_timeout()`` once ``timeout`` passes on ``clock``."""
    task = asyncio.ensure_future(awaitable)
    expired = False

    def expire() -> None:
        nonlocal expired
        if not task.done():
            expired = True
            task.cancel()

    timer = clock.create_one_shot(timeout, expire)
    try:
        return await task
    except asyncio.CancelledError:
        if expired:
            raise on_timeout() from None
        raise
    finally:
        timer.cancel()
