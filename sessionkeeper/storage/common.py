"""Storage port and helpers shared by the memory, file and Redis stores."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Protocol

from sessionkeeper.storage.errors import PathTraversalError

SESSION_KEY = "session"
ATTEMPTS_KEY = "login_attempts"


class KeyValueStore(Protocol):
    """Durable byte storage that survives process restarts."""

    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def key_to_filename(key: str) -> str:
    """Map a store key to a flat file name (``sessionkeeper:session`` -> ``sessionkeeper_session.json``)."""
    if not key:
        raise PathTraversalError("empty key")
    return _UNSAFE_KEY_CHARS.sub("_", key) + ".json"


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")
