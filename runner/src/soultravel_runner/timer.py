from __future__ import annotations

"""One-tick-per-second timer engines with synchronous teardown."""

import asyncio
import math
from typing import Callable

TickCallback = Callable[[int], None]


class TimerHandle:
    """A running tick source bound to one callback.

    Ticks carry the 1-based count of delivered ticks. `stop()` flips the
    handle inactive before returning, and every delivery path checks that flag,
    so nothing fires after teardown even if a callback was already scheduled.
    """

    def __init__(self, engine: "TimerEngine", on_tick: TickCallback, clock: Callable[[], float]) -> None:
        self._engine = engine
        self._on_tick = on_tick
        self._clock = clock
        self.started_at = clock()
        self.ticks = 0
        self._active = True
        self._pending: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._active

    def elapsed(self) -> int:
        """Whole ticks' worth of clock time since start, delivered or not."""

        span = (self._clock() - self.started_at) / self._engine.interval
        return int(math.floor(span + 1e-9))

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._engine._release(self)

    def _deliver(self) -> bool:
        if not self._active:
            return False
        self.ticks += 1
        self._on_tick(self.ticks)
        return self._active


class TimerEngine:
    """Base tick source; subclasses provide the clock and scheduling."""

    interval = 1.0

    def __init__(self) -> None:
        self._handles: list[TimerHandle] = []

    def start(self, on_tick: TickCallback) -> TimerHandle:
        handle = TimerHandle(self, on_tick, self._clock())
        self._handles.append(handle)
        self._schedule(handle)
        return handle

    def stop(self, handle: TimerHandle) -> None:
        handle.stop()

    def running(self) -> list[TimerHandle]:
        return list(self._handles)

    def _clock(self) -> Callable[[], float]:
        raise NotImplementedError

    def _schedule(self, handle: TimerHandle) -> None:
        pass

    def _release(self, handle: TimerHandle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)


class ManualTimer(TimerEngine):
    """Deterministic engine whose clock only moves through `advance()`."""

    def __init__(self) -> None:
        super().__init__()
        self._now = 0

    def now(self) -> float:
        return float(self._now)

    def _clock(self) -> Callable[[], float]:
        return self.now

    def advance(self, seconds: int = 1, *, deliver: bool = True) -> None:
        """Move the clock forward one second at a time.

        With `deliver=False` the clock moves but ticks stay queued; the next
        delivering advance catches up one tick per owed second.
        """

        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        for _ in range(seconds):
            self._now += 1
            if deliver:
                self._flush()
        if deliver and seconds == 0:
            self._flush()

    def _flush(self) -> None:
        for handle in list(self._handles):
            while handle.active and handle.ticks < handle.elapsed():
                if not handle._deliver():
                    break


class LoopTimer(TimerEngine):
    """asyncio engine; each handle ticks on the loop running when it started."""

    def __init__(self, interval: float = 1.0, loop: asyncio.AbstractEventLoop | None = None) -> None:
        super().__init__()
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._loop = loop

    def _clock(self) -> Callable[[], float]:
        loop = self._loop or asyncio.get_running_loop()
        return loop.time

    def _schedule(self, handle: TimerHandle) -> None:
        self._arm(self._loop or asyncio.get_running_loop(), handle)

    def _arm(self, loop: asyncio.AbstractEventLoop, handle: TimerHandle) -> None:
        due = handle.started_at + self.interval * (handle.ticks + 1)
        handle._pending = loop.call_at(due, self._fire, loop, handle)

    def _fire(self, loop: asyncio.AbstractEventLoop, handle: TimerHandle) -> None:
        handle._pending = None
        try:
            handle._deliver()
        finally:
            # a raising callback must not end the tick stream
            if handle.active:
                self._arm(loop, handle)
