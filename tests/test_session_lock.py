"""Tests for the session lock and its owner liveness checks."""

import os
import subprocess

import pytest

from agentless.services.proxy.session_lock import LockAcquisition, SessionBusyError, SessionLock
from agentless.services.proxy.state_store import FileLock


@pytest.fixture
def lock_path(tmp_path):
    return tmp_path / "session" / "session.lock"


@pytest.fixture
def dead_pid():
    process = subprocess.Popen(["true"])
    process.wait()
    return process.pid


def test_acquire_records_owner(lock_path):
    lock = SessionLock(lock_path)

    assert lock.try_acquire() == LockAcquisition.ACQUIRED
    assert lock.held
    assert lock.owner_pid() == os.getpid()
    lock.release()
    assert not lock.held


def test_stale_lock_file_is_not_busy(lock_path, dead_pid):
    """A lock file left by a dead holder can be taken over."""
    lock_path.parent.mkdir(parents=True)
    lock_path.write_text(str(dead_pid))

    lock = SessionLock(lock_path)
    assert lock.try_acquire() == LockAcquisition.ACQUIRED
    assert lock.owner_pid() == os.getpid()
    lock.release()


def test_live_holder_is_busy(lock_path):
    holder = FileLock(lock_path).acquire()
    try:
        lock = SessionLock(lock_path)
        assert lock.try_acquire() == LockAcquisition.BUSY
        with pytest.raises(SessionBusyError):
            lock.acquire()
        with pytest.raises(SessionBusyError):
            lock.acquire_with_retry(attempts=2, delay=0)
        assert lock.is_locked()
    finally:
        holder.release()


def test_is_locked_without_file(lock_path):
    assert SessionLock(lock_path).is_locked() is False


def test_held_by_expected_owner(lock_path, dead_pid):
    owner = SessionLock(lock_path).acquire()
    try:
        assert SessionLock(lock_path, expected_owner_pid=os.getpid()).is_held_by_live_owner()
        assert not SessionLock(lock_path, expected_owner_pid=dead_pid).is_held_by_live_owner()
    finally:
        owner.release()


def test_held_by_recorded_owner(lock_path):
    with SessionLock(lock_path):
        assert SessionLock(lock_path).is_held_by_live_owner()
    assert not SessionLock(lock_path).is_held_by_live_owner()


def test_wait_until_released_times_out(lock_path):
    holder = FileLock(lock_path).acquire()
    try:
        with pytest.raises(SessionBusyError):
            SessionLock(lock_path).wait_until_released(timeout=0.2, poll_interval=0.05)
    finally:
        holder.release()


def test_wait_until_released_returns_when_free(lock_path):
    SessionLock(lock_path).wait_until_released(timeout=0)
