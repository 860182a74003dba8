"""JSON file stores for Dingo Track.

Example:
    from dingotrack.storage import open_store

    store = open_store("dingo-track-timers", "~/.config/dingo-track")
    store.set("timers_user_1", [])
"""

from pathlib import Path
from typing import Literal

from dingotrack.storage.lock import (
    FlockLock,
    PidFileLock,
    StoreLock,
    create_lock,
    pid_is_alive,
)
from dingotrack.storage.shared import SharedKeyValueStore
from dingotrack.storage.store import KeyValueStore


def open_store(
    name: str,
    data_dir: str | Path,
    lock_backend: Literal["pid", "flock"] = "pid",
    retry_delay: float = 0.05,
    max_attempts: int = 100,
) -> SharedKeyValueStore:
    """Open a named store shared with other processes.

    Args:
        name: Store name; the file is ``<data_dir>/<name>.json``.
        data_dir: Directory holding store files.
        lock_backend: ``"pid"`` or ``"flock"``.
        retry_delay: Seconds between lock attempts.
        max_attempts: Lock attempt budget.

    Returns:
        The opened store.
    """
    path = Path(data_dir).expanduser() / f"{name}.json"
    lock = create_lock(path.with_suffix(".lock"), lock_backend, retry_delay, max_attempts)
    return SharedKeyValueStore(path, lock=lock)


__all__ = [
    "KeyValueStore",
    "SharedKeyValueStore",
    "StoreLock",
    "PidFileLock",
    "FlockLock",
    "create_lock",
    "pid_is_alive",
    "open_store",
]
