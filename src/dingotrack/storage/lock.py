"""Advisory locks guarding a store file against other processes.

Two backends are available:

- ``PidFileLock``: a lock file created exclusively (``O_CREAT | O_EXCL``)
  holding the owner's PID. A lock whose owner no longer exists is stale and
  is removed. Acquisition retries on a fixed delay up to a bounded number
  of attempts.
- ``FlockLock``: an OS-level lock from the ``filelock`` package, released by
  the kernel when the owner dies.

Both are re-entrant within one instance and usable as context managers.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Literal

from filelock import FileLock, Timeout

from dingotrack.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 0.05
DEFAULT_MAX_ATTEMPTS = 100

# An empty lock file older than this is left over from a crash mid-create
EMPTY_LOCK_GRACE_SECONDS = 10.0


class StoreLock(ABC):
    """Abstract base class for store locks.

    Implementations should handle:
    - Exclusive acquisition with bounded retries
    - Re-entrant acquire/release within one instance
    """

    def __init__(
        self,
        path: str | Path,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Initialize the lock.

        Args:
            path: Path of the lock file.
            retry_delay: Seconds to wait between acquisition attempts.
            max_attempts: Attempts before ``LockTimeoutError`` is raised.
        """
        self._path = Path(path)
        self._retry_delay = retry_delay
        self._max_attempts = max(1, max_attempts)

    @property
    def path(self) -> Path:
        """Get the lock file path."""
        return self._path

    @property
    @abstractmethod
    def is_locked(self) -> bool:
        """Whether this instance currently holds the lock."""
        ...

    @abstractmethod
    def acquire(self) -> None:
        """Acquire the lock, retrying until the attempts run out.

        Raises:
            LockTimeoutError: If the lock is still held by another owner.
        """
        ...

    @abstractmethod
    def release(self) -> None:
        """Release one level of the lock; the last release frees it."""
        ...

    async def acquire_async(self) -> None:
        """Acquire without blocking the event loop."""
        await asyncio.to_thread(self.acquire)

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def __aenter__(self) -> "StoreLock":
        await self.acquire_async()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


def pid_is_alive(pid: int) -> bool:
    """Check whether a process with the given PID exists.

    Args:
        pid: Process ID to check.

    Returns:
        False only if the process is known not to exist.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return True
    return True


class PidFileLock(StoreLock):
    """Lock file with PID-liveness staleness recovery.

    Example:
        lock = PidFileLock("/path/to/store.lock")
        with lock:
            ...  # exclusive read-modify-write
    """

    def __init__(
        self,
        path: str | Path,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        super().__init__(path, retry_delay, max_attempts)
        self._depth = 0

    @property
    def is_locked(self) -> bool:
        """Check if this instance currently holds the lock."""
        return self._depth > 0

    def _create(self) -> bool:
        """Create the lock file exclusively and write our PID."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        return True

    def _read_owner(self) -> int | None:
        """Read the PID recorded in the lock file, if any."""
        try:
            content = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def _is_stale(self) -> bool:
        """Decide whether an existing lock file was abandoned."""
        owner = self._read_owner()
        if owner is not None:
            return not pid_is_alive(owner)

        # No readable PID: either mid-create by another process or left
        # behind by a crash between create and write
        try:
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > EMPTY_LOCK_GRACE_SECONDS

    def _try_acquire(self) -> bool:
        """Make one acquisition attempt, clearing a stale lock if found."""
        if self._create():
            return True
        if self._is_stale():
            logger.warning(f"Removing stale lock {self._path} (owner {self._read_owner()})")
            self._path.unlink(missing_ok=True)
            return self._create()
        return False

    def acquire(self) -> None:
        """Acquire the lock, sleeping between attempts.

        Raises:
            LockTimeoutError: If the attempt budget is exhausted.
        """
        if self._depth:
            self._depth += 1
            return

        for attempt in range(self._max_attempts):
            if self._try_acquire():
                self._depth = 1
                return
            if attempt < self._max_attempts - 1:
                time.sleep(self._retry_delay)

        raise LockTimeoutError(
            f"Could not acquire {self._path} after {self._max_attempts} attempts"
        )

    async def acquire_async(self) -> None:
        """Acquire the lock using ``asyncio.sleep`` between attempts.

        Raises:
            LockTimeoutError: If the attempt budget is exhausted.
        """
        if self._depth:
            self._depth += 1
            return

        for attempt in range(self._max_attempts):
            if self._try_acquire():
                self._depth = 1
                return
            if attempt < self._max_attempts - 1:
                await asyncio.sleep(self._retry_delay)

        raise LockTimeoutError(
            f"Could not acquire {self._path} after {self._max_attempts} attempts"
        )

    def release(self) -> None:
        """Release the lock, removing the file if we still own it."""
        if not self._depth:
            return
        self._depth -= 1
        if self._depth:
            return
        if self._read_owner() == os.getpid():
            self._path.unlink(missing_ok=True)
        else:
            logger.warning(f"Lock {self._path} was taken over before release")


class FlockLock(StoreLock):
    """OS-level lock backed by ``filelock.FileLock``."""

    def __init__(
        self,
        path: str | Path,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        super().__init__(path, retry_delay, max_attempts)
        self._lock = FileLock(str(self._path))

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        """Acquire the lock.

        Raises:
            LockTimeoutError: If the lock is not obtained in time.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(
                timeout=self._retry_delay * self._max_attempts,
                poll_interval=self._retry_delay,
            )
        except Timeout as e:
            raise LockTimeoutError(f"Could not acquire {self._path}") from e

    def release(self) -> None:
        if self._lock.is_locked:
            self._lock.release()


def create_lock(
    path: str | Path,
    backend: Literal["pid", "flock"] = "pid",
    retry_delay: float = DEFAULT_RETRY_DELAY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> StoreLock:
    """Create a lock for the given backend name.

    Args:
        path: Lock file path.
        backend: ``"pid"`` or ``"flock"``.
        retry_delay: Seconds between attempts.
        max_attempts: Attempt budget.

    Returns:
        A store lock instance.
    """
    if backend == "pid":
        return PidFileLock(path, retry_delay, max_attempts)
    if backend == "flock":
        return FlockLock(path, retry_delay, max_attempts)
    raise ValueError(f"Unknown lock backend: {backend}")
