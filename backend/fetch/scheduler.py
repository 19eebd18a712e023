from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol


class Scheduler(Protocol):
    """
    The only scheduling primitive of the engine: keyed, cancelable timers.

    Scheduling under a key that already has a pending timer replaces it, which is
    what makes a timer a trailing-edge debounce.
    """

    def now_ms(self) -> float: ...

    def schedule_debounced(self, key: str, delay_ms: float, fn: Callable[[], None]) -> None: ...

    def cancel(self, key: str) -> bool: ...

    def is_pending(self, key: str) -> bool: ...

    async def sleep(self, delay_ms: float) -> None: ...


class AsyncioScheduler:
    """
    Real-time scheduler on the running asyncio loop.
    """

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    def schedule_debounced(self, key: str, delay_ms: float, fn: Callable[[], None]) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(max(0.0, delay_ms) / 1000.0, self._fire, key, fn)

    def cancel(self, key: str) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_pending(self, key: str) -> bool:
        return key in self._timers

    async def sleep(self, delay_ms: float) -> None:
        await asyncio.sleep(max(0.0, delay_ms) / 1000.0)

    def _fire(self, key: str, fn: Callable[[], None]) -> None:
        self._timers.pop(key, None)
        fn()


@dataclass(order=True)
class _Timer:
    due: float
    seq: int
    fn: Callable[[], None] = field(compare=False)
    key: str | None = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)


class VirtualScheduler:
    """
    Deterministic scheduler for tests: time only moves when `advance` is called.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)
        self._heap: list[_Timer] = []
        self._keyed: dict[str, _Timer] = {}
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._now

    def schedule_debounced(self, key: str, delay_ms: float, fn: Callable[[], None]) -> None:
        self.cancel(key)
        timer = _Timer(due=self._now + max(0.0, delay_ms), seq=next(self._seq), fn=fn, key=key)
        self._keyed[key] = timer
        heapq.heappush(self._heap, timer)

    def cancel(self, key: str) -> bool:
        timer = self._keyed.pop(key, None)
        if timer is None:
            return False
        timer.cancelled = True
        return True

    def is_pending(self, key: str) -> bool:
        return key in self._keyed

    async def sleep(self, delay_ms: float) -> None:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not fut.done():
                fut.set_result(None)

        heapq.heappush(
            self._heap,
            _Timer(due=self._now + max(0.0, delay_ms), seq=next(self._seq), fn=wake),
        )
        await fut

    def advance(self, delay_ms: float) -> int:
        """
        Move the clock forward, firing every timer that falls due. Returns how many fired.
        """
        target = self._now + max(0.0, delay_ms)
        fired = 0
        while self._heap and self._heap[0].due <= target:
            timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            if timer.key is not None:
                self._keyed.pop(timer.key, None)
            self._now = timer.due
            timer.fn()
            fired += 1
        self._now = target
        return fired

    async def run_for(self, delay_ms: float, *, step_ms: float = 10.0) -> None:
        """
        Advance in small steps, letting woken coroutines run between steps.
        """
        remaining = max(0.0, delay_ms)
        await settle()
        while remaining > 0:
            step = min(step_ms, remaining)
            self.advance(step)
            remaining -= step
            await settle()


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
