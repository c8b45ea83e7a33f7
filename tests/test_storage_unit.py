"""Unit tests for the store adapters, record codec and versioned writer.

Tests for:
- FileStore atomic writes, permissions and key mapping
- RedisStore error wrapping
- Session / ledger record validation
- RecordWriter stale-write suppression and failure reporting
"""

import os
import stat
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessionkeeper.service.persistence import RecordWriter
from sessionkeeper.storage.common import key_to_filename, safe_join
from sessionkeeper.storage.errors import (
    CorruptRecordError,
    PathTraversalError,
    StoreUnavailableError,
)
from sessionkeeper.storage.file import FileStore
from sessionkeeper.storage.memory import MemoryStore
from sessionkeeper.storage.models import LoginAttempt, Session
from sessionkeeper.storage.records import (
    decode_attempts,
    decode_session,
    encode_attempts,
    encode_session,
)
from sessionkeeper.storage.redis_store import RedisStore

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeRedis:
    """Minimal stand-in for the redis client surface the store uses."""

    def __init__(self, fail: bool = False):
        self.data = {}
        self.fail = fail
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value):
        self._check()
        self.data[key] = value
        return True

    def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    def close(self):
        self.closed = True


class TestKeyMapping:
    def test_prefixed_key_maps_to_flat_filename(self):
        assert key_to_filename("sessionkeeper:session") == "sessionkeeper_session.json"

    def test_separators_cannot_escape(self):
        assert key_to_filename("../../etc/passwd") == ".._.._etc_passwd.json"

    def test_empty_key_rejected(self):
        with pytest.raises(PathTraversalError):
            key_to_filename("")

    def test_safe_join_blocks_traversal(self, tmp_path):
        with pytest.raises(PathTraversalError):
            safe_join(tmp_path, "../outside.json")
        with pytest.raises(PathTraversalError):
            safe_join(tmp_path, "/etc/passwd")
        assert safe_join(tmp_path, "ok.json") == (tmp_path / "ok.json").resolve()


class TestFileStore:
    def test_set_get_delete(self, tmp_path):
        store = FileStore(str(tmp_path / "state"))

        assert store.get("session") is None
        store.set("session", b'{"a": 1}')
        assert store.get("session") == b'{"a": 1}'

        store.delete("session")
        assert store.get("session") is None
        store.delete("session")

    def test_survives_new_instance(self, tmp_path):
        FileStore(str(tmp_path)).set("sessionkeeper:login_attempts", b"[]")

        assert FileStore(str(tmp_path)).get("sessionkeeper:login_attempts") == b"[]"

    def test_permissions_and_no_temp_leftovers(self, tmp_path):
        state_dir = tmp_path / "state"
        store = FileStore(str(state_dir))
        store.set("session", b"one")
        store.set("session", b"two")

        assert stat.S_IMODE(os.stat(state_dir).st_mode) == 0o700
        assert stat.S_IMODE(os.stat(state_dir / "session.json").st_mode) == 0o600
        assert sorted(p.name for p in state_dir.iterdir()) == ["session.json"]

    def test_unwritable_location_is_store_unavailable(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")

        with pytest.raises(StoreUnavailableError):
            FileStore(str(blocker / "state"))


class TestRedisStore:
    def test_round_trip_through_client(self):
        client = FakeRedis()
        store = RedisStore(client=client)

        store.verify_connection()
        store.set("sessionkeeper:session", b"payload")
        assert store.get("sessionkeeper:session") == b"payload"
        store.delete("sessionkeeper:session")
        assert store.get("sessionkeeper:session") is None

    def test_string_values_returned_as_bytes(self):
        client = FakeRedis()
        client.data["k"] = "text"

        assert RedisStore(client=client).get("k") == b"text"

    def test_errors_are_wrapped(self):
        store = RedisStore(client=FakeRedis(fail=True))

        with pytest.raises(StoreUnavailableError) as excinfo:
            store.get("k")
        assert excinfo.value.detail["key"] == "k"
        with pytest.raises(StoreUnavailableError):
            store.set("k", b"v")
        with pytest.raises(StoreUnavailableError):
            store.delete("k")
        with pytest.raises(StoreUnavailableError):
            store.verify_connection()

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisStore()

    def test_close(self):
        client = FakeRedis()
        RedisStore(client=client).close()
        assert client.closed


class TestRecords:
    def test_session_record_is_json_with_iso_timestamps(self):
        session = Session(T0, T0, T0 + timedelta(minutes=30), identity="u1")

        raw = encode_session(session)

        assert b'"expires_at":"2024-03-01T12:30:00Z"' in raw
        assert decode_session("session", raw) == session

    def test_naive_timestamps_are_read_as_utc(self):
        raw = (
            b'{"login_time": "2024-03-01T12:00:00", "last_activity": "2024-03-01T12:00:00",'
            b' "expires_at": "2024-03-01T12:30:00"}'
        )

        session = decode_session("session", raw)

        assert session.login_time == T0
        assert session.login_time.tzinfo is not None
        assert session.device_info == "Unknown on Unknown"

    def test_inconsistent_session_is_corrupt(self):
        bad = Session(T0, T0, T0 - timedelta(seconds=1))

        with pytest.raises(CorruptRecordError) as excinfo:
            decode_session("session", encode_session(bad))
        assert excinfo.value.key == "session"

    def test_activity_before_login_is_corrupt(self):
        bad = Session(T0, T0 - timedelta(minutes=1), T0 + timedelta(minutes=30))

        with pytest.raises(CorruptRecordError):
            decode_session("session", encode_session(bad))

    def test_not_json_is_corrupt(self):
        with pytest.raises(CorruptRecordError):
            decode_session("session", b"not json")
        with pytest.raises(CorruptRecordError):
            decode_attempts("login_attempts", b"[1, 2")

    def test_ledger_record_keeps_order_and_agent(self):
        attempts = [
            LoginAttempt(T0, "a@x.com", False),
            LoginAttempt(T0 + timedelta(seconds=1), "a@x.com", True, agent="curl/8"),
        ]

        assert decode_attempts("login_attempts", encode_attempts(attempts)) == attempts


class TestRecordWriter:
    def test_older_versions_are_dropped(self):
        store = MemoryStore()
        writer = RecordWriter(store)

        assert writer.write("k", b"new", 2) is True
        assert writer.write("k", b"old", 1) is False
        assert store.get("k") == b"new"

    def test_versions_are_tracked_per_key(self):
        store = MemoryStore()
        writer = RecordWriter(store)

        writer.write("a", b"a", 5)
        assert writer.write("b", b"b", 1) is True

    def test_none_payload_deletes(self):
        store = MemoryStore()
        writer = RecordWriter(store)
        writer.write("k", b"v", 1)

        writer.write("k", None, 2)

        assert store.get("k") is None

    def test_failures_reported_through_hook(self):
        failures = []
        writer = RecordWriter(
            RedisStore(client=FakeRedis(fail=True)),
            on_failure=lambda key, exc: failures.append((key, exc.message)),
        )

        assert writer.write("k", b"v", 1) is False
        assert writer.read("k") is None
        assert failures == [("k", "redis set failed"), ("k", "redis get failed")]
