from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

from sessionkeeper.logging import get_logger
from sessionkeeper.storage.common import KeyValueStore
from sessionkeeper.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

FailureHook = Callable[[str, StoreUnavailableError], None]


class RecordWriter:
    """Serializes writes to the store and drops writes older than the last one.

    Callers bump a version while holding their own state lock and hand the
    encoded payload here afterwards, so two racing writers can never leave an
    older snapshot on disk after a newer one. Store failures are logged and
    reported through ``on_failure``; the in-memory state stays authoritative.
    """

    def __init__(self, store: KeyValueStore, *, on_failure: Optional[FailureHook] = None) -> None:
        self.store = store
        self.on_failure = on_failure
        self._lock = threading.Lock()
        self._written: Dict[str, int] = {}

    def write(self, key: str, payload: Optional[bytes], version: int) -> bool:
        """Persist ``payload`` (or delete ``key`` when it is ``None``).

        Returns ``True`` when the store accepted the write.
        """
        with self._lock:
            if version <= self._written.get(key, -1):
                logger.debug("store_write_superseded", key=key, version=version)
                return False
            self._written[key] = version
            try:
                if payload is None:
                    self.store.delete(key)
                else:
                    self.store.set(key, payload)
            except StoreUnavailableError as exc:
                logger.warning(
                    "store_write_failed",
                    key=key,
                    version=version,
                    error=exc.message,
                    detail=exc.detail,
                )
                failure = exc
            else:
                return True
        if self.on_failure is not None:
            self.on_failure(key, failure)
        return False

    def read(self, key: str) -> Optional[bytes]:
        try:
            return self.store.get(key)
        except StoreUnavailableError as exc:
            logger.warning("store_read_failed", key=key, error=exc.message, detail=exc.detail)
            if self.on_failure is not None:
                self.on_failure(key, exc)
            return None
