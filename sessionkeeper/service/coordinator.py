from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sessionkeeper.config import SessionPolicy
from sessionkeeper.logging import get_logger
from sessionkeeper.service.activity import ActivityMonitor, ActivitySource
from sessionkeeper.service.clock import Clock, SystemClock, TimerHandle
from sessionkeeper.service.device import describe_device
from sessionkeeper.service.ledger import DEFAULT_SKEW_LEEWAY, AttemptLedger
from sessionkeeper.service.persistence import RecordWriter
from sessionkeeper.service.session import SessionState, SessionStateMachine
from sessionkeeper.storage.common import ATTEMPTS_KEY, SESSION_KEY, KeyValueStore
from sessionkeeper.storage.errors import StoreUnavailableError
from sessionkeeper.storage.models import Session, normalize_identity

logger = get_logger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 60.0
DEFAULT_COUNTDOWN_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class SessionEvent:
    """Notification pushed to subscribers after a state change.

    ``kind`` is one of ``started``, ``restored``, ``activity``, ``extended``,
    ``ended``, ``expired``, ``tick``, ``attempt_recorded``,
    ``attempts_cleared`` or ``persist_failed``.
    """

    kind: str
    session: Optional[Session] = None
    remaining_seconds: int = 0
    identity: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LockoutStatus:
    identity: str
    locked: bool
    remaining_attempts: int
    retry_after_seconds: int


Listener = Callable[[SessionEvent], None]


class _SessionWatch:
    """Timers and activity subscription armed for one session; cancelled together."""

    def __init__(self, generation: int, handles: List[TimerHandle], monitor: Optional[ActivityMonitor]):
        self.generation = generation
        self.handles = handles
        self.monitor = monitor

    def cancel(self) -> None:
        for handle in self.handles:
            handle.cancel()
        if self.monitor is not None:
            self.monitor.stop()


class SessionCoordinator:
    """Facade over the attempt ledger and the session state machine.

    Everything other subsystems need goes through this class. Session state
    is guarded by the state machine's lock, held across compound operations
    here; the ledger has its own lock and is never touched while the session
    lock is held. Subscriber notifications are dispatched after the locks
    are released.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Optional[Clock] = None,
        policy: Optional[SessionPolicy] = None,
        *,
        check_interval: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        countdown_interval: float = DEFAULT_COUNTDOWN_INTERVAL_SECONDS,
        session_key: str = SESSION_KEY,
        attempts_key: str = ATTEMPTS_KEY,
        skew_leeway: timedelta = DEFAULT_SKEW_LEEWAY,
        restore: bool = True,
    ) -> None:
        if check_interval <= 0:
            raise ValueError("check_interval must be positive")
        if countdown_interval < 0:
            raise ValueError("countdown_interval must not be negative")
        self.clock = clock or SystemClock()
        self.policy = policy or SessionPolicy()
        self.check_interval = check_interval
        self.countdown_interval = countdown_interval
        self.writer = RecordWriter(store, on_failure=self._on_store_failure)
        self.ledger = AttemptLedger(
            self.writer, self.clock, self.policy, key=attempts_key, skew_leeway=skew_leeway
        )
        self.machine = SessionStateMachine(
            self.writer, self.clock, self.policy, key=session_key, skew_leeway=skew_leeway
        )
        self._watch: Optional[_SessionWatch] = None
        self._generation = 0
        self._monitor: Optional[ActivityMonitor] = None
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self._pending: List[SessionEvent] = []
        self._pending_lock = threading.Lock()
        self._restored = False
        if restore:
            self.restore()

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``SessionEvent`` pushes; returns an unsubscribe callable."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: SessionEvent) -> None:
        with self._pending_lock:
            self._pending.append(event)

    def _flush(self) -> None:
        with self._pending_lock:
            events, self._pending = self._pending, []
        if not events:
            return
        with self._listeners_lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception as exc:
                    logger.error(
                        "session_listener_failed",
                        kind=event.kind,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )

    def _on_store_failure(self, key: str, exc: StoreUnavailableError) -> None:
        self._emit(
            SessionEvent(kind="persist_failed", detail={"key": key, "error": exc.message})
        )

    # -- timers ---------------------------------------------------------------

    def _arm_locked(self) -> None:
        self._disarm_locked()
        self._generation += 1
        generation = self._generation
        handles = [
            self.clock.schedule_periodic(self.check_interval, lambda: self._on_tick(generation))
        ]
        if self.countdown_interval > 0:
            handles.append(
                self.clock.schedule_periodic(
                    self.countdown_interval, lambda: self._on_tick(generation)
                )
            )
        if self._monitor is not None:
            self._monitor.start(self._on_activity)
        self._watch = _SessionWatch(generation, handles, self._monitor)

    def _disarm_locked(self) -> None:
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None

    def _on_tick(self, generation: int) -> None:
        with self.machine.lock:
            if self._watch is None or self._watch.generation != generation:
                # Late tick from a cancelled registration
                return
            if not self._expire_locked():
                self._emit(
                    SessionEvent(
                        kind="tick",
                        session=self.machine.snapshot(),
                        remaining_seconds=self.machine.time_remaining_seconds(),
                    )
                )
        self._flush()

    def _expire_locked(self) -> bool:
        snapshot = self.machine.snapshot()
        if not self.machine.expire_if_due():
            return False
        self._disarm_locked()
        logger.info(
            "session_expired",
            identity=snapshot.identity if snapshot else None,
        )
        self._emit(SessionEvent(kind="expired", session=snapshot))
        return True

    def _on_activity(self) -> None:
        state = self.machine.state
        if state is SessionState.ACTIVE:
            self.update_activity()
        elif state is SessionState.EXPIRED:
            self.check_expiry()

    # -- restore / shutdown -----------------------------------------------------

    def restore(self) -> Optional[Session]:
        """Reload the ledger and reinstate a still-valid persisted session.

        Runs at most once per coordinator, and only before any session or
        attempt has been recorded: from then on the in-memory state is
        authoritative, even when the store has fallen behind it. Returns
        ``None`` when skipped.
        """
        with self.machine.lock:
            if self._restored or self.machine.state is not SessionState.NO_SESSION:
                logger.debug("session_restore_ignored", already_restored=self._restored)
                return None
            self._restored = True
        try:
            self.ledger.load()
            with self.machine.lock:
                session = self.machine.restore()
                if session is not None:
                    self._arm_locked()
                    self._emit(
                        SessionEvent(
                            kind="restored",
                            session=session,
                            remaining_seconds=self.machine.time_remaining_seconds(),
                        )
                    )
            return session
        finally:
            self._flush()

    def close(self) -> None:
        """Cancel timers and activity subscriptions without ending the session."""
        with self.machine.lock:
            self._disarm_locked()
            if self._monitor is not None:
                self._monitor.stop()

    # -- activity source ----------------------------------------------------

    def attach_activity_source(
        self,
        source: ActivitySource,
        events: Optional[Iterable[str]] = None,
        *,
        coalesce: timedelta = timedelta(0),
    ) -> ActivityMonitor:
        """Register as a sink on ``source``; activity only counts while a session is active."""
        monitor = ActivityMonitor(source, events, clock=self.clock, coalesce=coalesce)
        with self.machine.lock:
            if self._monitor is not None:
                self._monitor.stop()
            self._monitor = monitor
            if self._watch is not None:
                self._watch.monitor = monitor
                monitor.start(self._on_activity)
        logger.info("activity_source_attached", events=list(monitor.events))
        return monitor

    def detach_activity_source(self) -> None:
        with self.machine.lock:
            if self._monitor is not None:
                self._monitor.stop()
            self._monitor = None
            if self._watch is not None:
                self._watch.monitor = None

    # -- session operations -------------------------------------------------

    def start_session(
        self,
        identity: str,
        remember: bool = False,
        *,
        user_agent: Optional[str] = None,
    ) -> Session:
        """Start a session and record the successful login for ``identity``.

        The successful attempt is recorded here; callers must not record it
        again. Raises ``SessionActiveError`` if a valid session is running.
        """
        try:
            with self.machine.lock:
                self._restored = True
                if self.machine.state is SessionState.EXPIRED:
                    self._expire_locked()
                session = self.machine.start(
                    normalize_identity(identity),
                    remember,
                    device_info=describe_device(user_agent),
                )
                self._arm_locked()
                self._emit(
                    SessionEvent(
                        kind="started",
                        session=session,
                        identity=session.identity,
                        remaining_seconds=self.machine.time_remaining_seconds(),
                    )
                )
            self.record_attempt(identity, True, agent=user_agent)
            return session
        finally:
            self._flush()

    def end_session(self) -> bool:
        """End the session from any state. Repeated calls are no-ops."""
        try:
            with self.machine.lock:
                self._disarm_locked()
                snapshot = self.machine.snapshot()
                removed = self.machine.end()
                if removed:
                    self._emit(SessionEvent(kind="ended", session=snapshot))
            return removed
        finally:
            self._flush()

    def update_activity(self) -> bool:
        """Bump ``last_activity``; ``expires_at`` is untouched. ``False`` when inactive."""
        try:
            with self.machine.lock:
                if self._expire_locked():
                    return False
                last_activity = self.machine.touch()
                if last_activity is None:
                    return False
                self._emit(SessionEvent(kind="activity", session=self.machine.snapshot()))
                return True
        finally:
            self._flush()

    def extend_session(self) -> bool:
        """Slide expiry to ``now + session_timeout``. ``False`` when inactive or expired."""
        try:
            with self.machine.lock:
                if self._expire_locked():
                    return False
                if self.machine.extend() is None:
                    return False
                self._emit(
                    SessionEvent(
                        kind="extended",
                        session=self.machine.snapshot(),
                        remaining_seconds=self.machine.time_remaining_seconds(),
                    )
                )
                return True
        finally:
            self._flush()

    def check_expiry(self) -> bool:
        """Run the expiry evaluation now. Returns ``True`` if it ended the session."""
        try:
            with self.machine.lock:
                return self._expire_locked()
        finally:
            self._flush()

    @property
    def state(self) -> SessionState:
        return self.machine.state

    @property
    def session(self) -> Optional[Session]:
        return self.machine.snapshot()

    def is_session_valid(self) -> bool:
        return self.machine.is_valid()

    def time_remaining_seconds(self) -> int:
        return self.machine.time_remaining_seconds()

    # -- attempt operations -------------------------------------------------

    def record_attempt(self, identity: str, success: bool, agent: Optional[str] = None) -> None:
        try:
            self._restored = True
            attempt = self.ledger.record(identity, success, agent=agent)
            self._emit(
                SessionEvent(
                    kind="attempt_recorded",
                    identity=attempt.identity,
                    detail={
                        "success": success,
                        "remaining_attempts": self.ledger.remaining_attempts(identity),
                        "locked": self.ledger.is_locked(identity),
                    },
                )
            )
        finally:
            self._flush()

    def remaining_attempts(self, identity: str) -> int:
        return self.ledger.remaining_attempts(identity)

    def is_locked(self, identity: str) -> bool:
        return self.ledger.is_locked(identity)

    def lockout_remaining_seconds(self, identity: str) -> int:
        return self.ledger.lockout_remaining_seconds(identity)

    def lockout_status(self, identity: str) -> LockoutStatus:
        """Everything a login form needs to render a lockout countdown."""
        return LockoutStatus(
            identity=normalize_identity(identity),
            locked=self.ledger.is_locked(identity),
            remaining_attempts=self.ledger.remaining_attempts(identity),
            retry_after_seconds=self.ledger.lockout_remaining_seconds(identity),
        )

    def clear_attempts(self, identity: str) -> None:
        try:
            self._restored = True
            removed = self.ledger.clear(identity)
            self._emit(
                SessionEvent(
                    kind="attempts_cleared",
                    identity=normalize_identity(identity),
                    detail={"removed": removed},
                )
            )
        finally:
            self._flush()
