"""
On-disk layout of an agentless session directory.
"""
from pathlib import Path
from typing import Union

from agentless.services.proxy.session_id import SessionIdentity


class SessionPaths:
    """Paths of the state files kept for one session."""

    def __init__(self, base_path: Union[str, Path], identity: SessionIdentity):
        self.identity = identity
        self.root = Path(base_path) / identity.to_name()

    @property
    def lock(self) -> Path:
        return self.root / "session.lock"

    @property
    def init_pid(self) -> Path:
        return self.root / "sessionInit.pid"

    @property
    def backup_pid(self) -> Path:
        return self.root / "backupRunning.pid"

    @property
    def backup_job_id(self) -> Path:
        return self.root / "backupRunning.job"

    @property
    def session_info(self) -> Path:
        return self.root / "sessionInfo"

    @property
    def volume_metadata(self) -> Path:
        return self.root / "esxInfo"

    @property
    def guest_metadata(self) -> Path:
        return self.root / "agentInfo"

    @property
    def status(self) -> Path:
        return self.root / "sessionStatus"

    @property
    def mount_point(self) -> Path:
        return self.root / "vddk"

    @property
    def secret_file(self) -> Path:
        return self.root / "session.secret"

    @property
    def background_log(self) -> Path:
        return self.root / "background.log"

    @property
    def archive(self) -> Path:
        return self.root / "old"

    def job_status(self, job_id: str) -> Path:
        return self.root / f"{job_id}.status"
