"""Login attempt ledger and lockout derivation.

Lockout is never stored. It is recomputed on every query from the retained
failed attempts for an identity:

* every failed attempt still inside the retention window counts, including
  failures recorded before an intervening success;
* the identity is locked while there are at least ``max_attempts`` failures
  and the most recent one happened less than ``lockout`` ago.

A successful login therefore does not unlock an identity by itself; the
login flow calls ``clear`` once the user is in.
"""

from __future__ import annotations

import math
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from sessionkeeper.config import SessionPolicy
from sessionkeeper.logging import get_logger
from sessionkeeper.service.clock import Clock
from sessionkeeper.service.persistence import RecordWriter
from sessionkeeper.storage.common import ATTEMPTS_KEY
from sessionkeeper.storage.errors import CorruptRecordError
from sessionkeeper.storage.models import LoginAttempt, normalize_identity
from sessionkeeper.storage.records import decode_attempts, encode_attempts

logger = get_logger(__name__)

DEFAULT_SKEW_LEEWAY = timedelta(seconds=120)


class AttemptLedger:
    """Append-only, time-pruned record of login attempts."""

    def __init__(
        self,
        writer: RecordWriter,
        clock: Clock,
        policy: SessionPolicy,
        *,
        key: str = ATTEMPTS_KEY,
        skew_leeway: timedelta = DEFAULT_SKEW_LEEWAY,
    ) -> None:
        self.writer = writer
        self.clock = clock
        self.policy = policy
        self.key = key
        self.skew_leeway = skew_leeway
        self._lock = threading.RLock()
        self._attempts: List[LoginAttempt] = []
        self._version = 0

    # -- persistence -------------------------------------------------------

    def load(self) -> int:
        """Restore the ledger from the store, dropping stale or future entries.

        Returns the number of attempts retained.
        """
        raw = self.writer.read(self.key)
        now = self.clock.now()
        restored: List[LoginAttempt] = []
        discard_record = False
        if raw is not None:
            try:
                restored = decode_attempts(self.key, raw)
            except CorruptRecordError as exc:
                logger.warning("ledger_restore_discarded", key=self.key, reason=exc.reason)
                discard_record = True

        horizon = now + self.skew_leeway
        kept = [
            a for a in restored
            if self._retained(a, now) and a.timestamp <= horizon
        ]
        dropped = len(restored) - len(kept)
        with self._lock:
            self._attempts = kept
            self._version += 1
            version = self._version
            payload = None if discard_record else encode_attempts(kept)
        if discard_record or dropped:
            self.writer.write(self.key, payload, version)
        logger.info("ledger_restored", retained=len(kept), dropped=dropped)
        return len(kept)

    def _persist_locked(self) -> tuple[bytes, int]:
        self._version += 1
        return encode_attempts(self._attempts), self._version

    # -- queries ------------------------------------------------------------

    def _retained(self, attempt: LoginAttempt, now: datetime) -> bool:
        return attempt.timestamp > now - self.policy.retention

    def _failures_locked(self, identity: str, now: datetime) -> List[LoginAttempt]:
        return [
            a for a in self._attempts
            if a.identity == identity and not a.success and self._retained(a, now)
        ]

    def failed_attempts(self, identity: str) -> List[LoginAttempt]:
        """Retained failed attempts for ``identity``, oldest first."""
        key = normalize_identity(identity)
        with self._lock:
            return self._failures_locked(key, self.clock.now())

    def attempts(self, identity: Optional[str] = None) -> List[LoginAttempt]:
        with self._lock:
            if identity is None:
                return list(self._attempts)
            key = normalize_identity(identity)
            return [a for a in self._attempts if a.identity == key]

    def remaining_attempts(self, identity: str) -> int:
        return max(0, self.policy.max_attempts - len(self.failed_attempts(identity)))

    def lockout_expires_at(self, identity: str) -> Optional[datetime]:
        key = normalize_identity(identity)
        with self._lock:
            now = self.clock.now()
            failures = self._failures_locked(key, now)
            if len(failures) < self.policy.max_attempts:
                return None
            expiry = failures[-1].timestamp + self.policy.lockout
            return expiry if now < expiry else None

    def is_locked(self, identity: str) -> bool:
        return self.lockout_expires_at(identity) is not None

    def lockout_remaining_seconds(self, identity: str) -> int:
        key = normalize_identity(identity)
        with self._lock:
            now = self.clock.now()
            failures = self._failures_locked(key, now)
            if len(failures) < self.policy.max_attempts:
                return 0
            remaining = (failures[-1].timestamp + self.policy.lockout - now).total_seconds()
        return max(0, math.floor(remaining))

    # -- mutations ------------------------------------------------------------

    def record(self, identity: str, success: bool, agent: Optional[str] = None) -> LoginAttempt:
        """Append an attempt and prune the retention window. Never rejects."""
        key = normalize_identity(identity)
        with self._lock:
            now = self.clock.now()
            attempt = LoginAttempt(timestamp=now, identity=key, success=success, agent=agent)
            self._attempts.append(attempt)
            self._attempts = [a for a in self._attempts if self._retained(a, now)]
            payload, version = self._persist_locked()
            failures = len(self._failures_locked(key, now))
        self.writer.write(self.key, payload, version)
        log = logger.info if success else logger.warning
        log(
            "login_attempt_recorded",
            identity=key,
            success=success,
            failures=failures,
            max_attempts=self.policy.max_attempts,
        )
        return attempt

    def clear(self, identity: str) -> int:
        """Remove every failed attempt for ``identity``; successes are kept.

        Returns the number of attempts removed.
        """
        key = normalize_identity(identity)
        with self._lock:
            before = len(self._attempts)
            self._attempts = [
                a for a in self._attempts if a.identity != key or a.success
            ]
            removed = before - len(self._attempts)
            payload, version = self._persist_locked()
        self.writer.write(self.key, payload, version)
        if removed:
            logger.info("login_attempts_cleared", identity=key, removed=removed)
        return removed
