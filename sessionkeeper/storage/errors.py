from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailableError(Exception):
    """Raised when the backing key/value store cannot be read or written."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CorruptRecordError(ValueError):
    """Raised when a persisted record cannot be decoded."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"corrupt record {key!r}: {reason}")
        self.key = key
        self.reason = reason


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


__all__ = ["StoreUnavailableError", "CorruptRecordError", "PathTraversalError"]
