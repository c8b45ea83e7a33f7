"""Single-session lifecycle: NO_SESSION -> ACTIVE -> EXPIRED -> NO_SESSION.

``EXPIRED`` is observable only between the moment ``expires_at`` passes and
the next expiry evaluation, which always collapses it back to
``NO_SESSION``. There is no way back from ``EXPIRED`` other than a fresh
``start``.

Persistence ordering keeps the durable copy conservative: transitions that
grant or keep validity change memory first and write afterwards, while
transitions that remove the session delete the durable record first. A crash
between the two steps can lose an extension but never revives a session.
"""

from __future__ import annotations

import math
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sessionkeeper.config import SessionPolicy
from sessionkeeper.logging import get_logger
from sessionkeeper.service.clock import Clock
from sessionkeeper.service.errors import SessionActiveError
from sessionkeeper.service.ledger import DEFAULT_SKEW_LEEWAY
from sessionkeeper.service.persistence import RecordWriter
from sessionkeeper.storage.common import SESSION_KEY
from sessionkeeper.storage.errors import CorruptRecordError
from sessionkeeper.storage.models import Session
from sessionkeeper.storage.records import decode_session, encode_session

logger = get_logger(__name__)


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"
    EXPIRED = "expired"


class SessionStateMachine:
    """Owns the one live ``Session`` and its durable record."""

    def __init__(
        self,
        writer: RecordWriter,
        clock: Clock,
        policy: SessionPolicy,
        *,
        key: str = SESSION_KEY,
        skew_leeway: timedelta = DEFAULT_SKEW_LEEWAY,
    ) -> None:
        self.writer = writer
        self.clock = clock
        self.policy = policy
        self.key = key
        self.skew_leeway = skew_leeway
        # Re-entrant so the coordinator can hold it across compound operations
        self.lock = threading.RLock()
        self._session: Optional[Session] = None
        self._version = 0

    # -- queries ------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self.lock:
            if self._session is None:
                return SessionState.NO_SESSION
            if self._session.is_valid_at(self.clock.now()):
                return SessionState.ACTIVE
            return SessionState.EXPIRED

    def snapshot(self) -> Optional[Session]:
        with self.lock:
            return self._session.copy() if self._session else None

    def is_valid(self) -> bool:
        with self.lock:
            return self._session is not None and self._session.is_valid_at(self.clock.now())

    def time_remaining_seconds(self) -> int:
        with self.lock:
            if self._session is None:
                return 0
            remaining = (self._session.expires_at - self.clock.now()).total_seconds()
        return max(0, math.floor(remaining))

    # -- transitions ----------------------------------------------------------

    def start(
        self,
        identity: Optional[str],
        remember: bool = False,
        *,
        device_info: str = "Unknown on Unknown",
    ) -> Session:
        with self.lock:
            now = self.clock.now()
            if self._session is not None:
                if self._session.is_valid_at(now):
                    raise SessionActiveError(
                        "a session is already active",
                        detail={"expires_at": self._session.expires_at.isoformat()},
                    )
                self._clear_locked("expired")
            ttl = self.policy.remember_me if remember else self.policy.session_timeout
            self._session = Session.new(
                now,
                ttl,
                device_info=device_info,
                is_remembered=remember,
                identity=identity,
            )
            payload, version = self._encode_locked()
            session = self._session.copy()
        self.writer.write(self.key, payload, version)
        logger.info(
            "session_started",
            identity=identity,
            remembered=remember,
            expires_at=session.expires_at.isoformat(),
            device=device_info,
        )
        return session

    def touch(self) -> Optional[datetime]:
        """Record activity. Returns the new ``last_activity`` or ``None`` when inactive."""
        with self.lock:
            if not self._expire_or_keep_locked():
                return None
            # A wall clock stepped backwards must not put activity before login
            now = max(self.clock.now(), self._session.login_time)
            self._session.last_activity = now
            payload, version = self._encode_locked()
        self.writer.write(self.key, payload, version)
        return now

    def extend(self) -> Optional[datetime]:
        """Slide ``expires_at`` to ``now + session_timeout``. ``None`` when inactive."""
        with self.lock:
            if not self._expire_or_keep_locked():
                return None
            now = self.clock.now()
            expires_at = now + self.policy.session_timeout
            self._session.expires_at = expires_at
            self._session.last_activity = max(now, self._session.login_time)
            payload, version = self._encode_locked()
        self.writer.write(self.key, payload, version)
        logger.debug("session_extended", expires_at=expires_at.isoformat())
        return expires_at

    def end(self, reason: str = "logout") -> bool:
        """Clear the session from memory and storage. Safe to repeat.

        Returns ``True`` when a session was actually removed.
        """
        with self.lock:
            had_session = self._session is not None
            self._clear_locked(reason)
        return had_session

    def expire_if_due(self) -> bool:
        """Authoritative expiry evaluation. Returns ``True`` if it ended the session."""
        with self.lock:
            if self._session is None or self._session.is_valid_at(self.clock.now()):
                return False
            self._clear_locked("expired")
            return True

    def restore(self) -> Optional[Session]:
        """Reinstate a persisted session if it is still valid and plausible."""
        raw = self.writer.read(self.key)
        if raw is None:
            return None
        try:
            session = decode_session(self.key, raw)
        except CorruptRecordError as exc:
            logger.warning("session_restore_discarded", key=self.key, reason=exc.reason)
            self._drop_record()
            return None

        with self.lock:
            now = self.clock.now()
            problem = self._implausible(session, now)
            if problem is None:
                if session.last_activity > now:
                    session.last_activity = now
                self._session = session
                restored = session.copy()
            else:
                restored = None
        if restored is None:
            logger.info("session_restore_skipped", reason=problem)
            self._drop_record()
            return None
        logger.info(
            "session_restored",
            identity=restored.identity,
            expires_at=restored.expires_at.isoformat(),
        )
        return restored

    # -- internals ------------------------------------------------------------

    def _implausible(self, session: Session, now: datetime) -> Optional[str]:
        horizon = now + self.skew_leeway
        if not session.is_valid_at(now):
            return "expired"
        if session.login_time > horizon:
            return "login_time_in_future"
        if session.expires_at > horizon + self.policy.longest_session:
            return "expiry_beyond_policy"
        return None

    def _expire_or_keep_locked(self) -> bool:
        if self._session is None:
            return False
        if not self._session.is_valid_at(self.clock.now()):
            self._clear_locked("expired")
            return False
        return True

    def _encode_locked(self) -> tuple[bytes, int]:
        self._version += 1
        return encode_session(self._session), self._version

    def _clear_locked(self, reason: str) -> None:
        had_session = self._session is not None
        self._version += 1
        # Durable delete first: a crash here must not leave a revivable record
        self.writer.write(self.key, None, self._version)
        self._session = None
        if had_session:
            logger.info("session_ended", reason=reason)

    def _drop_record(self) -> None:
        with self.lock:
            if self._session is not None:
                return
            self._version += 1
            version = self._version
        self.writer.write(self.key, None, version)
