"""
Backup orchestration.

Turns a backup request (volumes, destination images, checkpoint token
files) into planned BackupJobs, runs them one after the other and keeps
the backup status document up to date. Also provides the background start,
cancel and status entry points used by the proxy API.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from agentless.core.config import Settings, settings as default_settings
from agentless.services.progress import VolumeProgress
from agentless.services.proxy.background import BackgroundLauncher, proxy_command
from agentless.services.proxy.backup_status import BackupStatus, BackupStatusService
from agentless.services.proxy.checkpoint_token import FULL_BACKUP_TOKEN, CheckpointTokenStore
from agentless.services.proxy.executor import BackupJobExecutor
from agentless.services.proxy.planner import BackupJob, ChangedRegionPlanner
from agentless.services.proxy.session import SessionLifecycleManager, SessionNotFoundError
from agentless.services.proxy.session_id import SessionIdentity
from agentless.services.proxy.session_lock import SessionLock

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


def generate_backup_job_id() -> str:
    return f"backup-{uuid.uuid4()}"


class BackupOrchestrator:
    """Plan and execute volume backups within an agentless session."""

    def __init__(
        self,
        lifecycle: SessionLifecycleManager,
        planner: Optional[ChangedRegionPlanner] = None,
        executor: Optional[BackupJobExecutor] = None,
        token_store: Optional[CheckpointTokenStore] = None,
        launcher: Optional[BackgroundLauncher] = None,
        config: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.lifecycle = lifecycle
        self.config = config or lifecycle.config or default_settings
        self.token_store = token_store or CheckpointTokenStore(self.config.TOKEN_HELPER_BINARY)
        self.planner = planner or ChangedRegionPlanner(log_callback=lifecycle.log_callback)
        self.executor = executor or BackupJobExecutor(self.token_store, self.config)
        self.launcher = launcher or lifecycle.launcher
        self.sleep = sleep

    def status_service(self, identity: SessionIdentity, job_id: str) -> BackupStatusService:
        return BackupStatusService(self.lifecycle.paths(identity).job_status(job_id), self.lifecycle.store)

    # ------------------------------------------------------------------
    # Backup in this process
    # ------------------------------------------------------------------

    def take_backup(
        self,
        identity: SessionIdentity,
        job_id: str,
        volumes: List[str],
        destinations: List[str],
        token_files: List[str],
        force_diffmerge: bool = False,
        force_full: bool = False,
    ) -> int:
        """
        Back up volumes of a ready session.

        Returns:
            Total bytes of all changed areas

        Raises:
            SessionBusyError: If another live process holds the session
            Exception: Any backup error, after the job was marked FAILED
        """
        logger.info(f"Acquiring session lock for {identity}")
        self.lifecycle.acquire_session_lock(identity)

        status = self.status_service(identity, job_id)
        logger.info(f"Initializing status for backup job {job_id}")
        status.initialize(volumes)

        self.lifecycle.save_backup_running_pid(identity)
        self.lifecycle.save_backup_job_id(identity, job_id)

        try:
            session = self.lifecycle.get_session(identity)
            total_bytes = self._do_backup(session, status, volumes, destinations, token_files,
                                          force_diffmerge, force_full)
            logger.info(f"Backup completed, {total_bytes} bytes")
            status.set_finished()
        except Exception as e:
            logger.error(f"Backup failed: {e}")
            status.set_failed(str(e))
            raise

        return total_bytes

    def read_tokens(self, volumes: List[str], token_files: List[str],
                    force_diffmerge: bool, force_full: bool):
        """
        Old checkpoint tokens per volume and whether every job must diff-merge.

        A failed or short batch read is not partially trusted: every
        volume falls back to "*" with diff-merge.
        """
        if force_diffmerge or force_full:
            return [FULL_BACKUP_TOKEN] * len(volumes), force_diffmerge

        logger.info("Requested incremental, reading checkpoint tokens")
        try:
            tokens = self.token_store.read_all(token_files)
            if len(tokens) != len(volumes):
                raise ValueError(f"Invalid number of checkpoint tokens: {len(tokens)} for {len(volumes)} volumes")
            return tokens, False
        except Exception as e:
            logger.error(f"Error while reading checkpoint tokens: {e}")
            logger.warning("Defaulting to '*' tokens and diff-merge for all volumes")
            return [FULL_BACKUP_TOKEN] * len(volumes), True

    def plan_jobs(self, session, volumes, destinations, token_files,
                  force_diffmerge: bool = False, force_full: bool = False) -> List[BackupJob]:
        tokens, diff_merge = self.read_tokens(volumes, token_files, force_diffmerge, force_full)
        return self.planner.plan(session, volumes, tokens, destinations, token_files, diff_merge)

    def _do_backup(self, session, status: BackupStatusService, volumes: List[str],
                   destinations: List[str], token_files: List[str],
                   force_diffmerge: bool, force_full: bool) -> int:
        logger.info(f"Backing up volumes {volumes} (force_diffmerge={force_diffmerge}, force_full={force_full})")
        jobs = self.plan_jobs(session, volumes, destinations, token_files, force_diffmerge, force_full)

        total_bytes = sum(job.total_bytes for job in jobs)
        total_areas = sum(len(job.changed_areas) for job in jobs)
        logger.info(f"Changes detected: {total_areas} area(s), {total_bytes} bytes")

        # A no-op backup must still outlive the background start check
        self.sleep(1)

        start_time = time.time()
        for job in jobs:
            status.set_volume_backup_type(job.volume_id, job.status_type)
            logger.info(f"Executing backup job for volume {job.volume_id}")

            progress = VolumeProgress(volume=job.volume_id, bytes_total=job.total_bytes)
            self.executor.execute(job, session, self._progress_callback(status, job, progress, start_time))

            elapsed = int(time.time() - start_time)
            logger.info(f"Backup job for volume {job.volume_id} finished after {elapsed}s")
            status.update_volume_transfer(job.volume_id, job.total_bytes, job.total_bytes, elapsed)
            status.set_volume_finished(job.volume_id)

        return total_bytes

    @staticmethod
    def _progress_callback(status: BackupStatusService, job: BackupJob,
                           progress: VolumeProgress, start_time: float):
        def _on_progress(processed: int, written: int, skipped: int, elapsed_ms: int, bps: int):
            progress.update(processed, written, skipped)
            logger.debug(
                f"Backup progress {job.volume_id}: processed {processed / MIB:.1f} MiB, "
                f"written {written / MIB:.1f} MiB, skipped {skipped / MIB:.1f} MiB, "
                f"elapsed {elapsed_ms / 1000:.1f}s, avg {bps / MIB:.1f} MiB/s, "
                f"instant {progress.transfer_rate_bps / MIB:.1f} MiB/s"
            )
            status.update_volume_transfer(job.volume_id, processed, job.total_bytes,
                                          int(time.time() - start_time))
        return _on_progress

    # ------------------------------------------------------------------
    # Entry points for other processes
    # ------------------------------------------------------------------

    def take_backup_background(
        self,
        identity: SessionIdentity,
        volumes: List[str],
        destinations: List[str],
        token_files: List[str],
        force_diffmerge: bool = False,
        force_full: bool = False,
    ) -> str:
        """
        Start a backup in a background process.

        Returns:
            The generated backup job id

        Raises:
            SessionNotFoundError: If the session was never initialized
            SessionBusyError: If a previous holder did not release the session in time
            BackgroundTaskError: If the backup did not start in time
        """
        if not self.lifecycle.is_session_initialized(identity):
            raise SessionNotFoundError(f"Agentless session {identity} not found")

        job_id = generate_backup_job_id()
        command = proxy_command(
            "backup",
            "--agentless-session", identity.to_name(),
            "--job-id", job_id,
        )
        for volume, destination, token_file in zip(volumes, destinations, token_files):
            command.extend([
                "--volume", volume,
                "--destination-file", destination,
                "--change-id-file", token_file,
            ])
        if force_diffmerge:
            command.append("--diff-merge")
        if force_full:
            command.append("--full")

        if self.lifecycle.is_backup_running(identity):
            running_job = self.lifecycle.get_backup_job_id(identity)
            logger.warning(f"Backup {running_job} is already running, cancelling it")
            if running_job:
                self.status_service(identity, running_job).set_cancelled()
            self.lifecycle.kill_running_backup(identity)

        self.lifecycle.wait_until_session_is_released(identity)

        paths = self.lifecycle.paths(identity)
        self.launcher.launch(
            command,
            f"backup {job_id}",
            ready=lambda process: (
                SessionLock(paths.lock, expected_owner_pid=process.pid).is_held_by_live_owner()
                and self.lifecycle.is_backup_running(identity)
            ),
            output_path=paths.background_log,
        )
        logger.info(f"Backup {job_id} started in the background")
        return job_id

    def cancel_backup(self, identity: SessionIdentity, job_id: str) -> SessionLock:
        """
        Kill a running backup and mark it CANCELLED.

        Returns:
            The session lock, held so no backup can start until it is released

        Raises:
            SessionNotFoundError: If the session was never initialized
            SessionBusyError: If the lock could not be taken after retries
        """
        if not self.lifecycle.is_session_initialized(identity):
            raise SessionNotFoundError(f"Agentless session {identity} not found")

        if self.lifecycle.is_backup_running(identity):
            logger.info(f"Cancelling backup {job_id}")
            self.lifecycle.kill_running_backup(identity)
        else:
            logger.warning("Backup is not running, nothing to cancel")

        lock = self.lifecycle.session_lock(identity)
        if not lock.held:
            lock.acquire_with_retry(self.config.CLEANUP_LOCK_ATTEMPTS, self.config.CLEANUP_LOCK_DELAY)

        self.status_service(identity, job_id).set_cancelled()
        logger.info(f"Backup {job_id} cancelled")
        return lock

    def get_backup_status(self, identity: SessionIdentity, job_id: str) -> Dict[str, Any]:
        """
        Backup status reconciled with process liveness.

        Raises:
            SessionNotFoundError: If the session was never initialized or the job is unknown
        """
        if not self.lifecycle.is_session_initialized(identity):
            raise SessionNotFoundError(f"Agentless session {identity} not found")

        document = self.status_service(identity, job_id).get()
        if document is None:
            raise SessionNotFoundError(f"Backup job {job_id} not found in session {identity}")

        if (document.get("status") == BackupStatus.ACTIVE.value
                and not self.lifecycle.is_backup_running(identity)):
            document["status"] = BackupStatus.FAILED.value

        return document
