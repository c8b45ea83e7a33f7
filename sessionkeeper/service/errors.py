from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for session-engine exceptions.

    Each class carries a stable ``error_code`` so hosts can map failures to
    their own transport without string matching.
    """

    error_code: str = "session_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class SessionActiveError(ServiceError):
    """A session is already active and still valid."""
    error_code = "conflict"


class ConfigurationError(ServiceError):
    """Runtime wiring could not be built from the settings."""
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "SessionActiveError",
    "ConfigurationError",
]
