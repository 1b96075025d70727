"""
Backup job status documents.

Written by the process running the backup and polled by any other
process, without the session lock. Each mutation is an exclusive
read-modify-write on the document's own lock; reads take a shared lock.
"""

import enum
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from agentless.services.proxy.state_store import StateStore

logger = logging.getLogger(__name__)


class BackupStatus(str, enum.Enum):
    ACTIVE = "active"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (BackupStatus.FINISHED, BackupStatus.FAILED, BackupStatus.CANCELLED)


def new_status_document(volumes: List[str]) -> Dict[str, Any]:
    """Initial document: overall and per-volume ACTIVE with unknown sizes."""
    return {
        "status": BackupStatus.ACTIVE.value,
        "elapsedTime": 0,
        "connection_error": False,
        "snapshot_error": False,
        "errorData": {
            "errorCode": 0,
            "errorParams": [],
            "errorMsg": "",
        },
        "details": [
            {
                "volume": volume,
                "status": BackupStatus.ACTIVE.value,
                "type": "",
                "transfer": {
                    "bytesTransferred": 0,
                    "totalSize": -1,
                },
            }
            for volume in volumes
        ],
    }


class BackupStatusService:
    """Mutations and queries of one backup job's status document."""

    def __init__(self, status_path: Union[str, Path], store: Optional[StateStore] = None):
        self.status_path = Path(status_path)
        self.store = store or StateStore()

    def initialize(self, volumes: List[str]):
        def _mutate(document):
            document.clear()
            document.update(new_status_document(volumes))
        self.store.update(self.status_path, _mutate)

    def _update_volume(self, volume: str, mutate):
        def _mutate(document):
            for details in document.get("details", []):
                if details["volume"] == volume:
                    mutate(details)
        self.store.update(self.status_path, _mutate)

    def set_volume_backup_type(self, volume: str, backup_type: str):
        self._update_volume(volume, lambda d: d.__setitem__("type", backup_type))

    def update_volume_transfer(self, volume: str, bytes_transferred: int,
                               total_size: int, elapsed_time: int):
        def _mutate(document):
            for details in document.get("details", []):
                if details["volume"] == volume:
                    details["transfer"]["bytesTransferred"] = bytes_transferred
                    details["transfer"]["totalSize"] = total_size
            document["elapsedTime"] = elapsed_time
        self.store.update(self.status_path, _mutate)

    def set_volume_finished(self, volume: str):
        self._update_volume(volume, lambda d: d.__setitem__("status", BackupStatus.FINISHED.value))

    def set_finished(self):
        self._set_terminal(BackupStatus.FINISHED)

    def set_cancelled(self):
        self._set_terminal(BackupStatus.CANCELLED)

    def set_failed(self, message: Optional[str] = None, error_code: int = 0):
        self._set_terminal(BackupStatus.FAILED, message, error_code)

    def _set_terminal(self, status: BackupStatus, message: Optional[str] = None, error_code: int = 0):
        """Move the job to a terminal status; a job that already finished keeps its status."""
        def _mutate(document):
            current = document.get("status", BackupStatus.ACTIVE.value)
            if current in TERMINAL_STATUSES:
                logger.warning(f"Backup status already {current}, not setting {status.value}")
                return
            document["status"] = status.value
            if status == BackupStatus.FAILED:
                document.setdefault("errorData", {})
                document["errorData"]["errorMsg"] = message or ""
                document["errorData"]["errorCode"] = error_code
        self.store.update(self.status_path, _mutate)

    def get(self) -> Optional[Dict[str, Any]]:
        return self.store.read_consistent(self.status_path)
