"""Activity port and monitor.

Hosts feed user activity through an ``ActivitySource``: a desktop shell can
wire input events, a web backend can emit a heartbeat per authenticated
request. ``ActivityHub`` is the in-process source for the latter case.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from sessionkeeper.config import DEFAULT_ACTIVITY_EVENTS
from sessionkeeper.logging import get_logger
from sessionkeeper.service.clock import Clock

logger = get_logger(__name__)

Listener = Callable[[], None]
Remover = Callable[[], None]


class ActivitySource(Protocol):
    def add_listener(self, event: str, callback: Listener) -> Remover: ...


class ActivityHub:
    """Thread-safe in-process activity source."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Listener]] = {}

    def add_listener(self, event: str, callback: Listener) -> Remover:
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

        def _remove() -> None:
            with self._lock:
                listeners = self._listeners.get(event, [])
                if callback in listeners:
                    listeners.remove(callback)

        return _remove

    def listener_count(self, event: Optional[str] = None) -> int:
        with self._lock:
            if event is not None:
                return len(self._listeners.get(event, []))
            return sum(len(items) for items in self._listeners.values())

    def emit(self, event: str) -> int:
        """Deliver ``event`` to its listeners. Returns how many were called."""
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        for callback in listeners:
            try:
                callback()
            except Exception as exc:
                logger.error(
                    "activity_listener_failed",
                    activity_event=event,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return len(listeners)


class ActivityMonitor:
    """Subscribes a sink to a set of activity events on one source.

    Bursts closer together than ``coalesce`` are forwarded once. ``stop``
    removes every registration; ``start`` always registers afresh.
    """

    def __init__(
        self,
        source: ActivitySource,
        events: Optional[Iterable[str]] = None,
        *,
        clock: Optional[Clock] = None,
        coalesce: timedelta = timedelta(0),
    ) -> None:
        self.source = source
        self.events = tuple(events) if events is not None else DEFAULT_ACTIVITY_EVENTS
        if not self.events:
            raise ValueError("at least one activity event is required")
        if coalesce > timedelta(0) and clock is None:
            raise ValueError("coalescing requires a clock")
        self.clock = clock
        self.coalesce = coalesce
        self._lock = threading.Lock()
        self._removers: List[Remover] = []
        self._last_forwarded: Optional[datetime] = None

    @property
    def active(self) -> bool:
        with self._lock:
            return bool(self._removers)

    def start(self, sink: Listener) -> None:
        self.stop()

        def _forward() -> None:
            if not self._should_forward():
                return
            sink()

        removers = [self.source.add_listener(event, _forward) for event in self.events]
        with self._lock:
            self._removers = removers
            self._last_forwarded = None
        logger.debug("activity_monitor_started", events=list(self.events))

    def stop(self) -> None:
        with self._lock:
            removers, self._removers = self._removers, []
        for remove in removers:
            remove()
        if removers:
            logger.debug("activity_monitor_stopped", removed=len(removers))

    def _should_forward(self) -> bool:
        if self.coalesce <= timedelta(0):
            return True
        now = self.clock.now()
        with self._lock:
            last = self._last_forwarded
            if last is not None and now - last < self.coalesce:
                return False
            self._last_forwarded = now
            return True
