"""
Process liveness helpers shared by locks, the mount manager and background tasks.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional, Union

import psutil
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

logger = logging.getLogger(__name__)


class ProcessStillRunningError(Exception):
    """Exception raised when a killed process refuses to die."""
    pass


def is_process_running(pid: Optional[int]) -> bool:
    """Return True if pid refers to a live, non-zombie process."""
    if not pid or pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return psutil.pid_exists(pid)


def kill_process(pid: Optional[int]) -> bool:
    """
    Send SIGKILL to a process.

    Returns:
        True if a live process was signalled
    """
    if not is_process_running(pid):
        return False
    if pid == os.getpid():
        logger.warning(f"Refusing to kill the current process ({pid})")
        return False
    try:
        psutil.Process(pid).kill()
        logger.info(f"Killed process {pid}")
        return True
    except psutil.NoSuchProcess:
        return False


@retry(
    stop=stop_after_attempt(5),
    wait=wait_fixed(1),
    retry=retry_if_exception_type(ProcessStillRunningError),
    reraise=True,
)
def force_kill(pid: int):
    """Kill a process and confirm it is gone, retrying until it is."""
    kill_process(pid)
    try:
        psutil.Process(pid).wait(timeout=1)
    except psutil.TimeoutExpired:
        pass
    except psutil.NoSuchProcess:
        return
    if is_process_running(pid):
        raise ProcessStillRunningError(f"Process {pid} is still running after SIGKILL")


def find_pid_by_cmdline(pattern: str) -> Optional[int]:
    """
    Find the first process whose joined command line matches a regex.

    Args:
        pattern: Regular expression searched against "argv0 argv1 ..."

    Returns:
        PID or None
    """
    regex = re.compile(pattern)
    for proc in psutil.process_iter(["pid", "cmdline"]):
        cmdline = proc.info.get("cmdline") or []
        if cmdline and regex.search(" ".join(cmdline)):
            return proc.info["pid"]
    return None


def read_pid_file(path: Union[str, Path]) -> Optional[int]:
    """Read a PID file, returning None if absent or unparsable."""
    try:
        content = Path(path).read_text().strip()
    except FileNotFoundError:
        return None
    if not content.isdigit():
        return None
    return int(content)


def write_pid_file(path: Union[str, Path], pid: int):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid))
