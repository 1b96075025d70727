"""
Session status document.

Only the process holding the session lock writes it; every write is still
a locked read-modify-write so that pollers never see a torn document.
"""

import enum
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from agentless.services.proxy.state_store import StateStore

logger = logging.getLogger(__name__)


class SessionStatus(str, enum.Enum):
    """Session state machine states."""
    STARTING = "starting"
    PRE_CLEANING = "pre_cleaning"
    CREATE_SNAPSHOT = "create_snapshot"
    MOUNT = "mount"
    ESX_INFO = "esx_info"
    AGENT_INFO = "agent_info"
    READY = "ready"
    CLEANING = "cleaning"
    CLEANED_UP = "cleaned_up"
    FAILED = "failed"


TERMINAL_STATUSES = (SessionStatus.CLEANED_UP, SessionStatus.FAILED)


class SessionStatusService:
    """Read and mutate one session's status document."""

    def __init__(self, status_path: Union[str, Path], store: Optional[StateStore] = None):
        self.status_path = Path(status_path)
        self.store = store or StateStore()

    def initialize(self):
        """Reset the document to STARTING."""
        self.store.update(self.status_path, self._reset)
        logger.info(f"Session status initialized at {self.status_path}")

    @staticmethod
    def _reset(document: Dict[str, Any]):
        document.clear()
        document.update({
            "status": SessionStatus.STARTING.value,
            "detail": "",
            "error": "",
            "hostVersion": None,
            "bypassingManagementServer": False,
        })

    def set_status(self, status: SessionStatus, detail: str = ""):
        def _mutate(document):
            document["status"] = status.value
            document["detail"] = detail
        self.store.update(self.status_path, _mutate)
        logger.info(f"Session status: {status.value}{f' ({detail})' if detail else ''}")

    def set_error(self, message: str):
        """Mark the session FAILED with an error message."""
        def _mutate(document):
            document["status"] = SessionStatus.FAILED.value
            document["error"] = message
        self.store.update(self.status_path, _mutate)
        logger.error(f"Session failed: {message}")

    def set_host_version(self, version: str):
        self.store.update(self.status_path, lambda d: d.__setitem__("hostVersion", version))

    def set_bypassing_management_server(self, bypassing: bool):
        self.store.update(self.status_path, lambda d: d.__setitem__("bypassingManagementServer", bypassing))

    def get(self) -> Optional[Dict[str, Any]]:
        """Current document, or None if the session never started."""
        return self.store.read_consistent(self.status_path)

    def get_status(self) -> Optional[SessionStatus]:
        document = self.get()
        if not document or "status" not in document:
            return None
        return SessionStatus(document["status"])
