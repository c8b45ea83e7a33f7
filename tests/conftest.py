import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionkeeper_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionkeeper.config import SessionPolicy  # noqa: E402
from sessionkeeper.service.clock import ManualClock  # noqa: E402
from sessionkeeper.service.coordinator import SessionCoordinator  # noqa: E402
from sessionkeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionkeeper.storage.memory import MemoryStore  # noqa: E402

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def policy():
    return SessionPolicy()


@pytest.fixture
def make_coordinator(store, clock, policy):
    """Factory so tests can build a second coordinator over the same store (a "restart")."""
    created = []

    def _make(**kwargs):
        kwargs.setdefault("store", store)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("policy", policy)
        coordinator = SessionCoordinator(**kwargs)
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.close()


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
