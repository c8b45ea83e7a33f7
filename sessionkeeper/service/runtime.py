from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionkeeper.config import Settings, StoreBackend, get_settings, reset_settings_cache
from sessionkeeper.logging import get_logger
from sessionkeeper.service.activity import ActivityHub
from sessionkeeper.service.clock import Clock, SystemClock
from sessionkeeper.service.coordinator import SessionCoordinator
from sessionkeeper.service.errors import ConfigurationError
from sessionkeeper.storage.common import ATTEMPTS_KEY, SESSION_KEY, KeyValueStore
from sessionkeeper.storage.errors import StoreUnavailableError
from sessionkeeper.storage.file import FileStore
from sessionkeeper.storage.memory import MemoryStore
from sessionkeeper.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> KeyValueStore:
    """Create the configured store, falling back to files when Redis is down and allowed."""
    backend = settings.store_backend
    if backend is StoreBackend.MEMORY:
        return MemoryStore()
    if backend is StoreBackend.FILE:
        return FileStore(settings.state_dir)

    if not settings.redis_url:
        raise ConfigurationError("STORE_BACKEND=redis requires REDIS_URL")
    redis_error: Exception | None = None
    try:
        store = RedisStore(settings.redis_url)
        store.verify_connection()
        return store
    except StoreUnavailableError as exc:
        redis_error = exc

    if not (settings.allow_store_fallback or settings.test_mode):
        raise ConfigurationError(
            "Redis is unreachable; start Redis or set ALLOW_STORE_FALLBACK=true "
            "to keep state in STATE_DIR instead."
        ) from redis_error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        state_dir=settings.state_dir,
    )
    return FileStore(settings.state_dir)


class Runtime:
    """Holds the process-wide coordinator and the adapters it was built with."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=self.settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        prefix = self.settings.store_key_prefix
        self.clock = clock or SystemClock()
        self.activity = ActivityHub()
        self.coordinator = SessionCoordinator(
            self.store,
            self.clock,
            self.settings.policy(),
            check_interval=self.settings.session_check_interval_seconds,
            countdown_interval=self.settings.session_countdown_interval_seconds,
            session_key=f"{prefix}{SESSION_KEY}",
            attempts_key=f"{prefix}{ATTEMPTS_KEY}",
            skew_leeway=timedelta(seconds=self.settings.clock_skew_leeway_seconds),
        )
        self.coordinator.attach_activity_source(
            self.activity,
            self.settings.activity_events,
            coalesce=timedelta(seconds=self.settings.activity_coalesce_seconds),
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            session_restored=self.coordinator.session is not None,
        )

    def close(self) -> None:
        self.coordinator.close()
        if isinstance(self.store, RedisStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Tear down the runtime singleton and cached settings for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        runtime = None
        reset_settings_cache()
