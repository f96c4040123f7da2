"""Persistent key-value storage using JSON files."""

import json
import logging
import os
import re
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileStore:
    """File-based key-value store, one JSON document per key.

    Writes go to a temporary file that is then moved over the target, so a
    crash mid-write never leaves a truncated document behind. Callers that
    read, modify and write a key from several processes hold locked(key)
    around the sequence.
    """

    def __init__(self, data_dir: str = ".renderq"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir = self.data_dir / "locks"
        self.locks_dir.mkdir(exist_ok=True)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.data_dir / f"{key}.json"

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under key, or default."""
        file_path = self._path(key)
        if not file_path.exists():
            return default
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except ValueError as e:
            logger.warning("Ignoring unreadable store entry %s: %s", file_path, e)
            return default

    def set(self, key: str, value: Any) -> None:
        self._write_json(self._path(key), value)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    # Locks

    def _lock_path(self, name: str) -> Path:
        if not _KEY_RE.match(name):
            raise ValueError(f"Invalid lock name: {name!r}")
        return self.locks_dir / f"{name}.lock"

    def acquire_lock(self, name: str, blocking: bool = False) -> Optional[int]:
        """Acquire a named lock. Returns lock file descriptor or None if locked."""
        fd = os.open(str(self._lock_path(name)), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            if blocking:
                raise
            return None
        return fd

    def release_lock(self, fd: int) -> None:
        """Release a lock."""
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def is_locked(self, name: str) -> bool:
        """True if some other holder has the named lock right now."""
        fd = self.acquire_lock(name)
        if fd is None:
            return True
        self.release_lock(fd)
        return False

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        """Hold the named lock for the duration of the block, waiting for it."""
        fd = self.acquire_lock(name, blocking=True)
        try:
            yield
        finally:
            self.release_lock(fd)
