from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class Session:
    login_time: datetime
    last_activity: datetime
    expires_at: datetime
    device_info: str = "Unknown on Unknown"
    is_remembered: bool = False
    identity: Optional[str] = None

    @classmethod
    def new(
        cls,
        now: datetime,
        ttl: timedelta,
        *,
        device_info: str = "Unknown on Unknown",
        is_remembered: bool = False,
        identity: Optional[str] = None,
    ) -> "Session":
        return cls(
            login_time=now,
            last_activity=now,
            expires_at=now + ttl,
            device_info=device_info,
            is_remembered=is_remembered,
            identity=identity,
        )

    def is_valid_at(self, now: datetime) -> bool:
        return now < self.expires_at

    def copy(self) -> "Session":
        return replace(self)


@dataclass(frozen=True)
class LoginAttempt:
    timestamp: datetime
    identity: str
    success: bool
    agent: Optional[str] = None


def normalize_identity(identity: str) -> str:
    """Case-fold an identity so ``A@X.com`` and ``a@x.com`` share a history."""
    return identity.strip().casefold()
