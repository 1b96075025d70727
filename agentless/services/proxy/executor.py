"""
Backup job execution through the external transfer helpers.

local-copy   mercuryftp copies changed extents from the local fuse mount.
remote-clone hyper-shuttle reads the snapshot straight from the host.

Both helpers take their job description as JSON on stdin and print one
JSON progress object per line on stdout:

    {"processed_bytes": N, "elapsed_time_ms": N, "bytes_per_second": N,
     "written_bytes": N, "skipped_bytes": N}
"""

import json
import logging
import os
import subprocess
import threading
from typing import Callable, Dict, List, Optional

from agentless.core.config import Settings, settings as default_settings
from agentless.services.proxy.checkpoint_token import CheckpointTokenStore
from agentless.services.proxy.planner import BackupJob, BackupJobError

logger = logging.getLogger(__name__)

REMOTE_CLONE_LIBRARY_VERSION = "6.7"

# (processed_bytes, written_bytes, skipped_bytes, elapsed_time_ms, bytes_per_second)
ProgressCallback = Callable[[int, int, int, int, int], None]


def parse_progress_line(line: str) -> Optional[Dict[str, int]]:
    """Parse one helper progress line; non-progress output returns None."""
    line = line.strip()
    if not line:
        return None
    try:
        info = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(info, dict) or "processed_bytes" not in info:
        return None
    return {
        "processed_bytes": int(info["processed_bytes"]),
        "elapsed_time_ms": int(info.get("elapsed_time_ms", 0)),
        "bytes_per_second": int(info.get("bytes_per_second", 0)),
        "written_bytes": int(info.get("written_bytes", 0)),
        "skipped_bytes": int(info.get("skipped_bytes", 0)),
    }


class BackupJobExecutor:
    """Run one BackupJob and write its new checkpoint token on success."""

    def __init__(self, token_store: Optional[CheckpointTokenStore] = None,
                 config: Optional[Settings] = None):
        self.config = config or default_settings
        self.token_store = token_store or CheckpointTokenStore(self.config.TOKEN_HELPER_BINARY)

    @property
    def remote_clone_library_path(self) -> str:
        return os.path.join(self.config.VDDK_LIB_PATH, REMOTE_CLONE_LIBRARY_VERSION, "lib64")

    def execute(self, job: BackupJob, session, progress_callback: Optional[ProgressCallback] = None):
        """
        Execute a backup job.

        Raises:
            BackupJobError: If the transfer helper exits non-zero
        """
        if not job.changed_areas:
            logger.info(f"No changed areas for volume {job.volume_id}, nothing to transfer")
            return

        logger.info(f"Backing up volume {job.volume_id} via {session.transfer_method.value} "
                    f"({len(job.changed_areas)} area(s), {job.total_bytes} bytes)")
        try:
            if session.is_using_remote_clone:
                self._copy_remote_clone(job, session, progress_callback)
            else:
                self._copy_local(job, progress_callback)
        except Exception as e:
            logger.error(f"Error while executing backup job for volume {job.volume_id}: {e}")
            raise

        logger.info(f"Updating checkpoint token in {job.token_file}: {job.old_token} -> {job.new_token}")
        self.token_store.write(job.token_file, job.new_token)

    def _extents(self, job: BackupJob) -> List[Dict[str, int]]:
        return [area.to_dict() for area in job.changed_areas]

    def _copy_local(self, job: BackupJob, progress_callback: Optional[ProgressCallback]):
        command = [
            self.config.LOCAL_COPY_BINARY,
            "-v", "2",
            "-b", str(self.config.LOCAL_COPY_BUFFER_SIZE),
            "-m",  # mapped extents on stdin
        ]
        if job.diff_merge:
            logger.info("Calling mercuryftp with diff-merge")
            command.append("-d")
        command.extend([job.source_path, job.destination_path])

        payload = json.dumps({"extents": self._extents(job)})
        exit_code = self._run(command, payload, None, progress_callback)
        if exit_code != 0:
            raise BackupJobError(f"Error calling mercuryftp: {exit_code}")

    def _copy_remote_clone(self, job: BackupJob, session, progress_callback: Optional[ProgressCallback]):
        library_path = self.remote_clone_library_path
        payload = json.dumps({
            "server_name": session.host,
            "user_name": session.user,
            "password": session.password,
            "vm_id": session.vm_ref,
            "snapshot_id": session.snapshot_ref,
            "disk_path": job.source_path,
            "output_path": job.destination_path,
            "extents": self._extents(job),
            "lib_path": library_path,
            "diff_merge": job.diff_merge,
            "async": True,
            "force_nbd": session.force_nbd,
        })
        env = dict(os.environ, LD_LIBRARY_PATH=library_path)

        exit_code = self._run([self.config.REMOTE_CLONE_BINARY], payload, env, progress_callback)
        if exit_code != 0:
            raise BackupJobError(f"Error calling hyper-shuttle: {exit_code}")

    def _run(self, command: List[str], payload: str, env: Optional[Dict[str, str]],
             progress_callback: Optional[ProgressCallback]) -> int:
        """Run a helper, relaying stdout progress and logging stderr. Returns the exit code."""
        # argv only; the payload (which may hold credentials) is never logged
        logger.info(f"Executing transfer helper: {' '.join(command)}")
        process = subprocess.Popen(
            command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            text=True,
        )

        def _feed():
            try:
                process.stdin.write(payload)
            except BrokenPipeError:
                logger.warning("Transfer helper closed stdin early")
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass

        def _drain_stderr():
            for line in process.stderr:
                if line.strip():
                    logger.info(f"Transfer helper output: {line.rstrip()}")

        threads = [threading.Thread(target=_feed, daemon=True),
                   threading.Thread(target=_drain_stderr, daemon=True)]
        for thread in threads:
            thread.start()

        for line in process.stdout:
            progress = parse_progress_line(line)
            if progress is None:
                if line.strip():
                    logger.debug(f"Unexpected transfer helper output: {line.rstrip()}")
                continue
            if progress_callback:
                progress_callback(
                    progress["processed_bytes"],
                    progress["written_bytes"],
                    progress["skipped_bytes"],
                    progress["elapsed_time_ms"],
                    progress["bytes_per_second"],
                )

        exit_code = process.wait()
        for thread in threads:
            thread.join(timeout=5)
        return exit_code
