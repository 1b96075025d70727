"""
Session lock with owner liveness.

The session lock is an flock() on a file inside the session directory. The
holder writes its PID into the file, so other processes can tell apart
"the lock is held" from "the process we expect to hold it is alive". The
background launcher relies on the second question: it polls until the lock
is held AND the process it started is running.
"""

import logging
import os
import time
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from agentless.services.proxy.processes import is_process_running, read_pid_file
from agentless.services.proxy.state_store import FileLock, LockBusyError, LockMode

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base exception for agentless session operations."""
    pass


class SessionBusyError(SessionError):
    """Exception raised when the session lock is held by a live process."""
    pass


class LockAcquisition(str, Enum):
    ACQUIRED = "acquired"
    BUSY = "busy"


class SessionLock:
    """
    Explicit {lock_path, expected_owner_pid} lock abstraction.

    expected_owner_pid is the PID a caller believes should hold the lock
    (e.g. a freshly launched background process). When it is not given,
    liveness checks fall back to the PID recorded in the lock file.
    """

    def __init__(self, lock_path: Union[str, Path], expected_owner_pid: Optional[int] = None):
        self.lock_path = Path(lock_path)
        self.expected_owner_pid = expected_owner_pid
        self._lock = FileLock(self.lock_path)

    @property
    def held(self) -> bool:
        """True if this object holds the lock."""
        return self._lock.held

    def try_acquire(self) -> LockAcquisition:
        """
        Non-blocking exclusive acquisition; records the current PID on success.

        A lock file left behind by a dead holder is not busy: the kernel
        drops flock() locks when their holder exits.
        """
        try:
            self._lock.acquire(LockMode.EXCLUSIVE, blocking=False)
        except LockBusyError:
            return LockAcquisition.BUSY

        self._lock.write_owner(os.getpid())
        return LockAcquisition.ACQUIRED

    def acquire(self) -> "SessionLock":
        """
        Acquire the lock or fail.

        Raises:
            SessionBusyError: If a live process holds the lock
        """
        if self.try_acquire() == LockAcquisition.BUSY:
            raise SessionBusyError(
                f"Session is busy, lock {self.lock_path} is held by PID {self.owner_pid()}"
            )
        return self

    def acquire_with_retry(self, attempts: int, delay: float) -> "SessionLock":
        """
        Acquire the lock, retrying a bounded number of times.

        Raises:
            SessionBusyError: If every attempt found the lock busy
        """
        @retry(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(delay),
            retry=retry_if_exception_type(SessionBusyError),
            reraise=True,
        )
        def _acquire():
            return self.acquire()

        return _acquire()

    def release(self):
        self._lock.release()

    def owner_pid(self) -> Optional[int]:
        """PID recorded in the lock file by the last holder."""
        return read_pid_file(self.lock_path)

    def is_locked(self) -> bool:
        """True if some open file description holds the lock."""
        if self._lock.held:
            return True
        if not self.lock_path.exists():
            return False
        trial = FileLock(self.lock_path)
        try:
            trial.acquire(LockMode.EXCLUSIVE, blocking=False)
        except LockBusyError:
            return True
        trial.release()
        return False

    def is_owner_alive(self) -> bool:
        pid = self.expected_owner_pid or self.owner_pid()
        return is_process_running(pid)

    def is_held_by_live_owner(self) -> bool:
        """
        True if the lock is held AND the expected (or recorded) owner is running.

        With an expected owner the check never touches the flock itself: the
        owner records its PID only after acquiring, and a trial acquisition
        could make that owner's non-blocking attempt fail.
        """
        if self.expected_owner_pid is not None:
            return self.owner_pid() == self.expected_owner_pid and self.is_owner_alive()
        return self.is_locked() and self.is_owner_alive()

    def wait_until_released(self, timeout: float, poll_interval: float = 1.0):
        """
        Wait for other holders to release the lock.

        Raises:
            SessionBusyError: If the lock is still held after timeout seconds
        """
        deadline = time.time() + timeout
        while self.is_locked():
            if time.time() >= deadline:
                raise SessionBusyError(
                    f"Timed out after {timeout}s waiting for session lock {self.lock_path}"
                )
            time.sleep(poll_interval)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
