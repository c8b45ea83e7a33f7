from __future__ import annotations

from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from sessionkeeper.logging import get_logger
from sessionkeeper.storage.errors import StoreUnavailableError


class RedisStore:
    """Thin Redis wrapper implementing the key/value store port.

    Uses the synchronous client: every store call happens from timer threads
    or caller threads, never from inside an event loop.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.logger = get_logger(__name__)
        self.redis_url = redis_url
        # Keep raw bytes; records are JSON encoded by the caller
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=False,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StoreUnavailableError("redis ping failed", {"error": str(exc)}) from exc
        self.logger.debug("redis_store_connected")

    def get(self, key: str) -> Optional[bytes]:
        try:
            value = self.client.get(key)
        except RedisError as exc:
            raise StoreUnavailableError("redis get failed", {"key": key, "error": str(exc)}) from exc
        if value is None:
            return None
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    def set(self, key: str, value: bytes) -> None:
        try:
            self.client.set(key, value)
        except RedisError as exc:
            raise StoreUnavailableError("redis set failed", {"key": key, "error": str(exc)}) from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisError as exc:
            raise StoreUnavailableError(
                "redis delete failed", {"key": key, "error": str(exc)}
            ) from exc

    def close(self) -> None:
        self.client.close()
