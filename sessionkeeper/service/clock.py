"""Clock and timer sources.

The engine only needs ``now()`` and ``schedule_periodic()``. ``SystemClock``
runs each periodic callback on its own daemon thread, ``AsyncioClock`` drives
it from an event-loop task and runs it in a worker thread, and ``ManualClock`` is driven explicitly by
tests and simulations.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Union

from sessionkeeper.logging import get_logger

logger = get_logger(__name__)

Interval = Union[float, timedelta]


def _seconds(interval: Interval) -> float:
    if isinstance(interval, timedelta):
        interval = interval.total_seconds()
    if interval <= 0:
        raise ValueError("interval must be positive")
    return float(interval)


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Clock(Protocol):
    def now(self) -> datetime: ...

    def schedule_periodic(
        self, interval: Interval, callback: Callable[[], None]
    ) -> TimerHandle: ...


def _run_callback(callback: Callable[[], None], timer: str) -> None:
    try:
        callback()
    except Exception as exc:
        logger.error(
            "periodic_callback_failed",
            timer=timer,
            error=str(exc),
            error_type=type(exc).__name__,
        )


class _ThreadTimer:
    def __init__(self, interval: float, callback: Callable[[], None], name: str) -> None:
        self.interval = interval
        self.callback = callback
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "_ThreadTimer":
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            _run_callback(self.callback, self._thread.name)

    def cancel(self) -> None:
        # No join: cancel may be called from inside the callback itself
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()


class SystemClock:
    """Wall clock with thread-backed periodic timers."""

    _ids = itertools.count(1)

    def now(self) -> datetime:
        return utcnow()

    def schedule_periodic(
        self, interval: Interval, callback: Callable[[], None]
    ) -> _ThreadTimer:
        name = f"sessionkeeper-timer-{next(self._ids)}"
        return _ThreadTimer(_seconds(interval), callback, name).start()


class _TaskTimer:
    def __init__(self, loop: asyncio.AbstractEventLoop, task: "asyncio.Task[None]") -> None:
        self._loop = loop
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._task.cancel)

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self._task.cancelled()


class AsyncioClock:
    """Wall clock whose periodic callbacks run as tasks on an event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def now(self) -> datetime:
        return utcnow()

    def schedule_periodic(
        self, interval: Interval, callback: Callable[[], None]
    ) -> _TaskTimer:
        seconds = _seconds(interval)
        loop = self._loop or asyncio.get_running_loop()

        async def _run_loop() -> None:
            while True:
                await asyncio.sleep(seconds)
                # Callbacks take thread locks and do blocking store I/O
                await asyncio.to_thread(_run_callback, callback, "asyncio")

        task = loop.create_task(_run_loop())
        return _TaskTimer(loop, task)


class _ManualTimer:
    def __init__(self, interval: timedelta, callback: Callable[[], None], due: datetime) -> None:
        self.interval = interval
        self.callback = callback
        self.due = due
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualClock:
    """Deterministic clock; time only moves when ``advance`` or ``set`` is called.

    Periodic callbacks fire synchronously, in due order, with ``now()``
    reporting each callback's due time while it runs.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._timers: List[_ManualTimer] = []
        self._lock = threading.RLock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def schedule_periodic(
        self, interval: Interval, callback: Callable[[], None]
    ) -> _ManualTimer:
        step = timedelta(seconds=_seconds(interval))
        with self._lock:
            timer = _ManualTimer(step, callback, self._now + step)
            self._timers.append(timer)
            return timer

    @property
    def active_timers(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, delta: Interval) -> None:
        if isinstance(delta, timedelta):
            step = delta
        else:
            step = timedelta(seconds=delta)
        if step < timedelta(0):
            raise ValueError("cannot move a manual clock backwards")
        with self._lock:
            target = self._now + step
        while True:
            with self._lock:
                self._timers = [t for t in self._timers if not t.cancelled]
                due = [t for t in self._timers if t.due <= target]
                if not due:
                    self._now = target
                    return
                timer = min(due, key=lambda t: t.due)
                self._now = timer.due
                timer.due = timer.due + timer.interval
            # Fire outside the lock so callbacks may schedule or cancel timers
            _run_callback(timer.callback, "manual")

    def set(self, moment: datetime) -> None:
        with self._lock:
            current = self._now
        self.advance(moment - current)

    def rewind(self, delta: Interval) -> None:
        """Step time backwards without firing anything, like a wall-clock correction."""
        step = delta if isinstance(delta, timedelta) else timedelta(seconds=delta)
        if step < timedelta(0):
            raise ValueError("rewind takes a positive delta")
        with self._lock:
            self._now = self._now - step
