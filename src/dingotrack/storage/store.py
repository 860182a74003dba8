"""JSON file persistence for key-value namespaces.

Each store is a single JSON object on disk. The file is the source of
truth: every operation reloads it first, so changes made by another
process (e.g. the stdio bridge) are picked up, and every mutation rewrites
the whole namespace.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


class KeyValueStore:
    """JSON file-based key-value store.

    A missing file is an empty namespace. A malformed file is logged, moved
    aside and treated as empty. Write failures are logged and reported via
    the return value; the in-memory state keeps the attempted mutation.

    Example:
        store = KeyValueStore("/path/to/dingo-track-timers.json")
        store.set("timers_user_1", [{"name": "Coding", "calendarId": "primary"}])
        timers = store.get("timers_user_1", [])
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the store and load the backing file.

        Args:
            path: Path to the JSON file backing this namespace.
        """
        self._path = Path(path).expanduser()
        self._data: dict[str, Any] = {}
        self._load()

    @classmethod
    def named(cls, name: str, data_dir: str | Path, **kwargs: Any) -> "KeyValueStore":
        """Create a store for ``<data_dir>/<name>.json``."""
        return cls(Path(data_dir).expanduser() / f"{name}.json", **kwargs)

    @property
    def path(self) -> Path:
        """Get the storage file path."""
        return self._path

    def _read_file(self) -> dict[str, Any]:
        """Read and parse the backing file.

        Returns:
            Parsed namespace, empty if the file is missing or blank.

        Raises:
            ValueError: If the file is not a JSON object.
        """
        if not self._path.exists():
            return {}

        content = self._path.read_text(encoding="utf-8")
        if not content.strip():
            return {}

        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return data

    def _load(self) -> None:
        """Reload the namespace from disk."""
        try:
            self._data = self._read_file()
        except ValueError as e:
            logger.error(f"Malformed store {self._path}: {e}")
            self._quarantine()
            self._data = {}
        except OSError as e:
            logger.error(f"Failed to load store {self._path}: {e}")
            self._data = {}

    def _quarantine(self) -> None:
        """Move an unreadable file aside so it is not overwritten silently."""
        if not self._path.exists():
            return
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        target = self._path.with_name(f"{self._path.stem}.corrupt-{stamp}{self._path.suffix}")
        try:
            self._path.replace(target)
            logger.warning(f"Moved malformed store file to {target}")
        except OSError as e:
            logger.error(f"Failed to move malformed store file {self._path}: {e}")

    def _serialize(self) -> str:
        return json.dumps(self._data, indent=2, default=self._json_serializer)

    def _json_serializer(self, obj: Any) -> Any:
        """Custom JSON serializer for datetime objects."""
        if isinstance(obj, datetime):
            return obj.isoformat()
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

    def _write_file(self) -> None:
        """Write the namespace to disk.

        Raises:
            OSError: If the file cannot be written.
            TypeError: If a value is not JSON serializable.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(self._serialize(), encoding="utf-8")

    def _save(self) -> bool:
        """Persist the namespace, logging instead of raising on failure.

        Returns:
            True if the file was written.
        """
        try:
            self._write_file()
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save store {self._path}: {e}")
            return False
        logger.debug(f"Saved {len(self._data)} keys to {self._path}")
        return True

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value, reloading from disk first.

        Args:
            key: Key to look up.
            default: Value returned when the key is absent.

        Returns:
            The stored value or ``default``.
        """
        self._load()
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> bool:
        """Set a single key and write the whole namespace.

        Args:
            key: Key to set.
            value: JSON-serializable value.

        Returns:
            True if the change was flushed to disk.
        """
        self._load()
        self._data[key] = value
        return self._save()

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> bool:
        """Replace a key with ``fn(current)`` in a single read-modify-write.

        Args:
            key: Key to update.
            fn: Receives the freshly loaded value (or ``default``) and
                returns the new value.
            default: Value passed to ``fn`` when the key is absent.

        Returns:
            True if the change was flushed to disk.
        """
        self._load()
        self._data[key] = fn(self._data.get(key, default))
        return self._save()

    def delete(self, key: str) -> bool:
        """Remove a key and write the namespace back.

        Returns:
            True if the namespace was flushed to disk.
        """
        self._load()
        self._data.pop(key, None)
        return self._save()

    def has(self, key: str) -> bool:
        """Check whether a key is present."""
        self._load()
        return key in self._data

    def keys(self) -> list[str]:
        """List the keys currently stored."""
        self._load()
        return list(self._data)

    def clear(self) -> bool:
        """Remove every key from the namespace."""
        self._data = {}
        return self._save()
