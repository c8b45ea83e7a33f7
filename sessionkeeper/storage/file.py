from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from sessionkeeper.logging import get_logger
from sessionkeeper.storage.common import key_to_filename, safe_join
from sessionkeeper.storage.errors import StoreUnavailableError


class FileStore:
    """Key/value store keeping one JSON file per key under ``state_dir``.

    Writes go to a temp file in the same directory and are renamed into
    place, so a crash mid-write leaves either the old or the new record.
    """

    def __init__(self, state_dir: str) -> None:
        self.logger = get_logger(__name__)
        self.state_dir = Path(state_dir)
        self._io_lock = threading.Lock()
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            raise StoreUnavailableError(
                "state directory unavailable", {"path": str(self.state_dir), "error": str(exc)}
            ) from exc
        self.logger.debug("file_store_ready", state_dir=str(self.state_dir))

    def _path(self, key: str) -> Path:
        return safe_join(self.state_dir, key_to_filename(key))

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailableError(
                "read failed", {"key": key, "error": str(exc)}
            ) from exc

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        with self._io_lock:
            tmp_path = None
            try:
                fd, tmp_path = tempfile.mkstemp(
                    dir=str(self.state_dir), prefix=f".{path.stem}_", suffix=".tmp"
                )
                try:
                    os.write(fd, value)
                    os.fchmod(fd, 0o600)
                    os.fsync(fd)
                finally:
                    os.close(fd)
                os.replace(tmp_path, path)
            except OSError as exc:
                if tmp_path is not None:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
                raise StoreUnavailableError(
                    "write failed", {"key": key, "error": str(exc)}
                ) from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._io_lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise StoreUnavailableError(
                    "delete failed", {"key": key, "error": str(exc)}
                ) from exc
