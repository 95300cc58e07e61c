from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Any, Callable, Coroutine, List, Optional, Protocol, Set, Tuple

from sessionlife.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[], None]


class TimerHandle(Protocol):
    @property
    def active(self) -> bool: ...

    def cancel(self) -> None: ...


class Clock(Protocol):
    """Monotonic time source with single-shot and repeating timers."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callback) -> TimerHandle: ...

    def call_every(
        self, interval: float, callback: Callback, *, first_delay: Optional[float] = None
    ) -> TimerHandle: ...

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]": ...


def _run_callback(callback: Callback) -> None:
    try:
        callback()
    except Exception as exc:
        logger.error(
            "timer_callback_failed",
            callback=getattr(callback, "__qualname__", repr(callback)),
            error_type=type(exc).__name__,
            error=str(exc),
        )


class _LoopTimer:
    """Timer backed by ``loop.call_later``; repeating timers re-arm themselves."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        callback: Callback,
        delay: float,
        interval: Optional[float],
    ) -> None:
        self._loop = loop
        self._callback = callback
        self._interval = interval
        self._cancelled = False
        self._fired = False
        self._handle: Optional[asyncio.TimerHandle] = loop.call_later(delay, self._fire)

    @property
    def active(self) -> bool:
        return not self._cancelled and not (self._fired and self._interval is None)

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        if self._interval is not None:
            self._handle = self._loop.call_later(self._interval, self._fire)
        _run_callback(self._callback)

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioClock:
    """Clock driven by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        return _LoopTimer(self._get_loop(), callback, max(0.0, delay), None)

    def call_every(
        self, interval: float, callback: Callback, *, first_delay: Optional[float] = None
    ) -> TimerHandle:
        delay = interval if first_delay is None else first_delay
        return _LoopTimer(self._get_loop(), callback, max(0.0, delay), interval)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        return self._get_loop().create_task(coro)


class _VirtualTimer:
    def __init__(self, clock: "VirtualClock", callback: Callback, interval: Optional[float]) -> None:
        self._clock = clock
        self.callback = callback
        self.interval = interval
        self.cancelled = False
        self.fired = False

    @property
    def active(self) -> bool:
        return not self.cancelled and not (self.fired and self.interval is None)

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock:
    """Deterministic clock: time only moves when ``advance`` is awaited.

    Timers fire in deadline order (ties in scheduling order). After each
    firing, tasks created through ``spawn`` are given a chance to run so a
    renewal started by a timer completes before the next timer is due.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._seq = itertools.count()
        self._queue: List[Tuple[float, int, _VirtualTimer]] = []
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def now(self) -> float:
        return self._now

    def _schedule(self, timer: _VirtualTimer, delay: float) -> None:
        heapq.heappush(self._queue, (self._now + max(0.0, delay), next(self._seq), timer))

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        timer = _VirtualTimer(self, callback, None)
        self._schedule(timer, delay)
        return timer

    def call_every(
        self, interval: float, callback: Callback, *, first_delay: Optional[float] = None
    ) -> TimerHandle:
        timer = _VirtualTimer(self, callback, interval)
        self._schedule(timer, interval if first_delay is None else first_delay)
        return timer

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        return task

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, timer in self._queue if timer.active)

    async def settle(self, rounds: int = 50) -> None:
        """Let spawned tasks run until they finish or block on something else."""
        for _ in range(rounds):
            self._tasks = {task for task in self._tasks if not task.done()}
            if not self._tasks:
                return
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        await self.settle()
        while self._queue and self._queue[0][0] <= target:
            deadline, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = max(self._now, deadline)
            timer.fired = True
            if timer.interval is not None:
                heapq.heappush(
                    self._queue, (deadline + timer.interval, next(self._seq), timer)
                )
            _run_callback(timer.callback)
            await self.settle()
        self._now = max(self._now, target)

    async def advance_to(self, when: float) -> None:
        await self.advance(max(0.0, when - self._now))
