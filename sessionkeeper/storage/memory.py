from __future__ import annotations

import threading
from typing import Dict, Optional


class MemoryStore:
    """In-process key/value store.

    Nothing survives a restart; used for tests and for hosts that only need
    the lockout and expiry logic without durability.
    """

    def __init__(self) -> None:
        self.records: Dict[str, bytes] = {}
        self._data_lock = threading.RLock()

    def get(self, key: str) -> Optional[bytes]:
        with self._data_lock:
            return self.records.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._data_lock:
            self.records[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._data_lock:
            self.records.pop(key, None)
