"""JSON records for the persisted session and attempt ledger.

Timestamps are written as ISO-8601 strings and parsed back to timezone-aware
``datetime`` values. Anything that fails validation is reported as
``CorruptRecordError`` so callers can discard it as if it were absent.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from sessionkeeper.storage.errors import CorruptRecordError
from sessionkeeper.storage.models import LoginAttempt, Session

RECORD_VERSION = 1


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SessionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = RECORD_VERSION
    login_time: datetime
    last_activity: datetime
    expires_at: datetime
    device_info: str = "Unknown on Unknown"
    is_remembered: bool = False
    identity: Optional[str] = None

    @field_validator("login_time", "last_activity", "expires_at")
    @classmethod
    def _normalize_tz(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_ordering(self) -> "SessionRecord":
        if self.last_activity < self.login_time:
            raise ValueError("last_activity precedes login_time")
        if self.expires_at <= self.login_time:
            raise ValueError("expires_at does not follow login_time")
        return self


class AttemptRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: datetime
    identity: str
    success: bool
    agent: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_tz(cls, value: datetime) -> datetime:
        return _as_utc(value)


class LedgerRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = RECORD_VERSION
    attempts: List[AttemptRecord] = []


def encode_session(session: Session) -> bytes:
    # Validated on read only; whatever memory holds must reach the store
    record = SessionRecord.model_construct(
        login_time=session.login_time,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        device_info=session.device_info,
        is_remembered=session.is_remembered,
        identity=session.identity,
    )
    return record.model_dump_json().encode("utf-8")


def decode_session(key: str, raw: bytes) -> Session:
    try:
        record = SessionRecord.model_validate_json(raw)
    except ValidationError as exc:
        raise CorruptRecordError(key, f"{exc.error_count()} validation error(s)") from exc
    return Session(
        login_time=record.login_time,
        last_activity=record.last_activity,
        expires_at=record.expires_at,
        device_info=record.device_info,
        is_remembered=record.is_remembered,
        identity=record.identity,
    )


def encode_attempts(attempts: List[LoginAttempt]) -> bytes:
    record = LedgerRecord(
        attempts=[
            AttemptRecord(
                timestamp=a.timestamp,
                identity=a.identity,
                success=a.success,
                agent=a.agent,
            )
            for a in attempts
        ]
    )
    return record.model_dump_json().encode("utf-8")


def decode_attempts(key: str, raw: bytes) -> List[LoginAttempt]:
    try:
        record = LedgerRecord.model_validate_json(raw)
    except ValidationError as exc:
        raise CorruptRecordError(key, f"{exc.error_count()} validation error(s)") from exc
    return [
        LoginAttempt(
            timestamp=a.timestamp,
            identity=a.identity,
            success=a.success,
            agent=a.agent,
        )
        for a in record.attempts
    ]
