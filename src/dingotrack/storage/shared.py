"""Key-value store safe to share between processes.

The desktop process and the stdio bridge may read and write the same store
file. Whoever holds the lock has exclusive read-modify-write access to the
whole namespace; commits go through a temp file and an atomic rename so a
reader never sees a partial write.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

from dingotrack.errors import LockTimeoutError
from dingotrack.storage.lock import PidFileLock, StoreLock
from dingotrack.storage.store import KeyValueStore

logger = logging.getLogger(__name__)


class SharedKeyValueStore(KeyValueStore):
    """Locked, atomically committed variant of ``KeyValueStore``.

    If the lock cannot be acquired, writes are logged and return False and
    reads answer from the last state loaded.
    """

    def __init__(self, path: str | Path, lock: StoreLock | None = None) -> None:
        """Initialize the shared store.

        Args:
            path: Path to the JSON file backing this namespace.
            lock: Lock guarding the file (default: ``PidFileLock`` on
                ``<path>.lock``).
        """
        path = Path(path).expanduser()
        self._lock = lock or PidFileLock(path.with_suffix(".lock"))
        super().__init__(path)

    @property
    def lock(self) -> StoreLock:
        """Get the lock guarding this store."""
        return self._lock

    def _load(self) -> None:
        try:
            with self._lock:
                super()._load()
        except LockTimeoutError as e:
            logger.error(f"Reading {self._path} without refresh: {e}")

    def _write_file(self) -> None:
        """Write to a temp file in the same directory, then rename over."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        content = self._serialize()

        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _mutate(self, action: str, fn: Any, *args: Any) -> bool:
        """Run a base-class mutation while holding the lock."""
        try:
            with self._lock:
                return fn(*args)
        except LockTimeoutError as e:
            logger.error(f"Failed to {action} in {self._path}: {e}")
            return False

    def set(self, key: str, value: Any) -> bool:
        return self._mutate("set key", super().set, key, value)

    def delete(self, key: str) -> bool:
        return self._mutate("delete key", super().delete, key)

    def clear(self) -> bool:
        return self._mutate("clear", super().clear)

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> bool:
        return self._mutate("update key", super().update, key, fn, default)
