"""
Supervised launcher for background proxy commands.

Session initialization, backup start and session cleanup all run as
detached processes so the foreground caller can return quickly. The caller
still needs to know that the child really started, so launches are paired
with a readiness predicate that is polled under one timeout policy.
"""

import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional, Union

logger = logging.getLogger(__name__)


class BackgroundTaskError(Exception):
    """Exception raised when a background task fails to report ready."""
    pass


def proxy_command(*args: str) -> List[str]:
    """Build the argv of a proxy CLI subcommand."""
    return [sys.executable, "-m", "agentless.cli", *args]


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    poll_interval: float = 0.1,
    description: str = "condition",
) -> None:
    """
    Poll predicate until it returns True.

    Raises:
        BackgroundTaskError: If timeout seconds pass without the predicate holding
    """
    deadline = time.time() + timeout
    while not predicate():
        if time.time() >= deadline:
            raise BackgroundTaskError(f"Timed out after {timeout}s waiting for {description}")
        time.sleep(poll_interval)


class BackgroundLauncher:
    """Start detached processes and wait for them to report ready."""

    def __init__(self, timeout: float = 10, poll_interval: float = 0.1):
        self.timeout = timeout
        self.poll_interval = poll_interval

    def spawn(self, command: List[str], name: str,
              output_path: Optional[Union[str, Path]] = None) -> subprocess.Popen:
        """
        Start a process in its own session, detached from the caller's terminal.

        Args:
            command: argv of the process
            name: Human-readable task name for logs
            output_path: Optional file receiving the child's stdout/stderr
        """
        logger.info(f"Launching background task '{name}': {' '.join(command)}")
        if output_path:
            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, "ab") as out:
                return subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    close_fds=True,
                )
        return subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )

    def launch(
        self,
        command: List[str],
        name: str,
        ready: Optional[Callable[[subprocess.Popen], bool]] = None,
        output_path: Optional[Union[str, Path]] = None,
    ) -> subprocess.Popen:
        """
        Start a background task and wait until ready(process) holds.

        If the child exits before becoming ready, the launch fails straight
        away instead of waiting out the timeout.

        Raises:
            BackgroundTaskError: If the task exited early or did not become ready in time
        """
        process = self.spawn(command, name, output_path)
        if ready is None:
            return process

        def _ready_or_dead() -> bool:
            if ready(process):
                return True
            if process.poll() is not None:
                raise BackgroundTaskError(
                    f"Background task '{name}' exited with code {process.returncode} before it was ready"
                )
            return False

        wait_until(_ready_or_dead, self.timeout, self.poll_interval, f"background task '{name}'")
        logger.info(f"Background task '{name}' is running (PID {process.pid})")
        return process
