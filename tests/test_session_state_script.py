"""Tests for the scripts/session_state.py maintenance CLI."""

import importlib.util
import json
from pathlib import Path

import pytest

from sessionkeeper.logging import correlation_id_var
from sessionkeeper.service.coordinator import SessionCoordinator
from sessionkeeper.service.runtime import reset_runtime_for_tests
from sessionkeeper.storage.file import FileStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "session_state.py"


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("session_state", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "file")
    monkeypatch.setenv("STATE_DIR", str(tmp_path))
    monkeypatch.setenv("STORE_KEY_PREFIX", "sessionkeeper:")
    reset_runtime_for_tests()
    return tmp_path


def _seed(state_dir, *, failures=0, session_for=None):
    coordinator = SessionCoordinator(
        FileStore(str(state_dir)),
        session_key="sessionkeeper:session",
        attempts_key="sessionkeeper:login_attempts",
    )
    try:
        for _ in range(failures):
            coordinator.record_attempt("a@x.com", False)
        if session_for:
            coordinator.start_session(session_for)
    finally:
        coordinator.close()


def _run(script, capsys, *argv):
    assert script.run(list(argv)) == 0
    reset_runtime_for_tests()
    return capsys.readouterr().out


def test_status_reports_lockout(script, state_dir, capsys):
    _seed(state_dir, failures=5)
    correlation_id_var.set(None)
    capsys.readouterr()

    output = json.loads(_run(script, capsys, "status", "--identity", "A@x.com"))

    assert correlation_id_var.get() is not None
    assert output["state"] == "no_session"
    assert output["session"] is None
    assert output["lockout"]["identity"] == "a@x.com"
    assert output["lockout"]["locked"] is True
    assert output["lockout"]["remaining_attempts"] == 0
    assert 0 < output["lockout"]["retry_after_seconds"] <= 900


def test_clear_attempts_unlocks(script, state_dir, capsys):
    _seed(state_dir, failures=5)
    capsys.readouterr()

    dry = _run(script, capsys, "clear-attempts", "a@x.com", "--dry-run")
    assert "[DRY RUN] Would clear 5" in dry

    cleared = json.loads(_run(script, capsys, "clear-attempts", "a@x.com"))
    assert cleared == {"identity": "a@x.com", "cleared": 5}

    status = json.loads(_run(script, capsys, "status", "--identity", "a@x.com"))
    assert status["lockout"]["locked"] is False
    assert status["lockout"]["remaining_attempts"] == 5


def test_status_and_end_session(script, state_dir, capsys):
    _seed(state_dir, session_for="u1")
    capsys.readouterr()

    status = json.loads(_run(script, capsys, "status"))
    assert status["state"] == "active"
    assert status["session"]["identity"] == "u1"
    assert "lockout" not in status

    assert json.loads(_run(script, capsys, "end-session")) == {"ended": True}
    assert json.loads(_run(script, capsys, "end-session")) == {"ended": False}
    assert not (state_dir / "sessionkeeper_session.json").exists()
