"""
Persisted JSON state shared between proxy processes.

Session status and backup job status documents are read and written by
independently launched processes (foreground commands, background daemons,
cleanup runs). Every document has a sibling ".lock" file; mutations take an
exclusive advisory lock on it for one read-modify-write cycle, readers take
a shared lock.
"""

import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class StateStoreError(Exception):
    """Exception raised when a persisted document cannot be read."""
    pass


class LockBusyError(Exception):
    """Exception raised when a non-blocking lock request finds the lock held."""
    pass


class LockMode(str, Enum):
    SHARED = "shared"
    EXCLUSIVE = "exclusive"


class FileLock:
    """
    Advisory flock() on a dedicated lock file.

    The lock lives as long as the open file descriptor, so a holder that
    dies releases it implicitly.
    """

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, mode: LockMode = LockMode.EXCLUSIVE, blocking: bool = True,
                timeout: Optional[float] = None, poll_interval: float = 0.1) -> "FileLock":
        """
        Acquire the lock.

        Args:
            mode: Shared or exclusive
            blocking: Wait for the lock; when False signal busy immediately
            timeout: Optional upper bound on the wait when blocking

        Raises:
            LockBusyError: If the lock is held and blocking is False, or the timeout elapsed
        """
        if self._fd is not None:
            return self

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        flag = fcntl.LOCK_SH if mode == LockMode.SHARED else fcntl.LOCK_EX

        try:
            if blocking and timeout is None:
                fcntl.flock(fd, flag)
            else:
                deadline = time.time() + (timeout or 0)
                while True:
                    try:
                        fcntl.flock(fd, flag | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if not blocking or time.time() >= deadline:
                            raise LockBusyError(f"Lock is held: {self.path}")
                        time.sleep(poll_interval)
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        return self

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def write_owner(self, pid: int):
        """Record the owning PID inside the lock file (lock must be held)."""
        if self._fd is None:
            raise RuntimeError(f"Cannot write owner of unheld lock {self.path}")
        os.ftruncate(self._fd, 0)
        os.lseek(self._fd, 0, os.SEEK_SET)
        os.write(self._fd, str(pid).encode())
        os.fsync(self._fd)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()


class StateStore:
    """Read/modify/write primitive over JSON documents on disk."""

    LOCK_SUFFIX = ".lock"

    def lock_path(self, path: PathLike) -> Path:
        path = Path(path)
        return path.with_name(path.name + self.LOCK_SUFFIX)

    @contextmanager
    def with_lock(self, path: PathLike, mode: LockMode = LockMode.EXCLUSIVE,
                  blocking: bool = True) -> Iterator[FileLock]:
        """
        Hold the document's lock for the duration of the block.

        Raises:
            LockBusyError: If blocking is False and the lock is held
        """
        lock = FileLock(self.lock_path(path))
        lock.acquire(mode, blocking=blocking)
        try:
            yield lock
        finally:
            lock.release()

    def exists(self, path: PathLike) -> bool:
        return Path(path).is_file()

    def read(self, path: PathLike, default: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Read a JSON document.

        Returns:
            The document, or default if the file does not exist

        Raises:
            StateStoreError: If the file exists but is not valid JSON
        """
        path = Path(path)
        try:
            raw = path.read_text()
        except FileNotFoundError:
            return default

        if not raw.strip():
            return default

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Corrupted state document {path}: {e}") from e

    def write(self, path: PathLike, document: Dict[str, Any]):
        """Write a JSON document atomically (temp file + rename)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        with open(tmp_path, "w") as f:
            json.dump(document, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def update(self, path: PathLike, mutate: Callable[[Dict[str, Any]], None],
               default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Exclusive read-modify-write of a document.

        Args:
            path: Document path
            mutate: Callable that edits the current document in place
            default: Document to start from if none exists yet

        Returns:
            The document as written
        """
        with self.with_lock(path, LockMode.EXCLUSIVE):
            document = self.read(path)
            if document is None:
                document = dict(default or {})
            mutate(document)
            self.write(path, document)
            return document

    def read_consistent(self, path: PathLike) -> Optional[Dict[str, Any]]:
        """Read a document under a shared lock."""
        if not Path(path).parent.is_dir():
            return None
        with self.with_lock(path, LockMode.SHARED):
            return self.read(path)
