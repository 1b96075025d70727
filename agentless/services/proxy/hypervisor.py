"""
Hypervisor client interface consumed by the agentless proxy.

The SOAP/API client itself lives outside this package. Concrete clients
subclass HypervisorClient; the proxy only depends on the operations
declared here. Orphaned snapshot reaping is implemented once on the base
class on top of get_snapshot_chain()/remove_snapshot().
"""

import hashlib
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

BACKUP_SNAPSHOT_PREFIX = "vSiris Backup"
BACKUP_SNAPSHOT_PATTERN = re.compile(r"^vSiris Backup (\d{10})$")


class HypervisorError(Exception):
    """Exception raised for hypervisor API failures."""
    pass


class BypassedVcenterError(HypervisorError):
    """The ESX host is managed by a vCenter but was connected to directly."""
    pass


class ChangedAreaQueryError(HypervisorError):
    """Exception raised when a changed disk area query fails."""
    pass


@dataclass
class DiskArea:
    """A changed byte range reported by CBT."""
    start: int
    length: int


@dataclass
class ChangedDiskAreas:
    """One batch of a changed disk areas query."""
    start_offset: int
    length: int
    changed_area: List[DiskArea] = field(default_factory=list)


@dataclass
class SnapshotInfo:
    """A node of the VM snapshot tree."""
    ref: str
    name: str
    create_time: float  # epoch seconds


class HypervisorClient(ABC):
    """Abstract base class for hypervisor API clients."""

    @abstractmethod
    def retrieve_virtual_machine(self, vm_name: str) -> Any:
        """Look up a VM by name or managed object reference."""
        pass

    @abstractmethod
    def get_vm_ref(self, vm: Any) -> str:
        """Managed object reference id of a VM."""
        pass

    @abstractmethod
    def get_bios_uuid(self, vm: Any) -> str:
        pass

    @abstractmethod
    def get_host_uuid(self) -> str:
        """vCenter UUID when connected through vCenter, else the standalone host UUID."""
        pass

    @abstractmethod
    def validate_connection(self) -> None:
        """
        Validate the connection.

        Raises:
            BypassedVcenterError: If a vCenter-managed host was connected to directly
        """
        pass

    @abstractmethod
    def get_esx_host_version(self, vm: Any) -> Optional[str]:
        """Version of the host running the VM, e.g. "6.7.0"."""
        pass

    @abstractmethod
    def is_running_on_snapshots(self, vm: Any) -> bool:
        pass

    @abstractmethod
    def create_snapshot(self, vm: Any, name: str, description: str,
                        memory: bool = False, quiesce: bool = True) -> str:
        """
        Create a snapshot.

        Returns:
            Snapshot managed object reference id
        """
        pass

    @abstractmethod
    def remove_snapshot(self, vm: Any, snapshot_ref: str) -> None:
        pass

    @abstractmethod
    def get_snapshot_chain(self, vm: Any) -> List[SnapshotInfo]:
        """Snapshots along the first-child chain of the tree, root first."""
        pass

    @abstractmethod
    def set_cbt_enabled(self, vm: Any, enabled: bool) -> None:
        """Enable or disable changed block tracking (takes effect after a snapshot cycle)."""
        pass

    @abstractmethod
    def retrieve_vmdk_paths(self, vm: Any, snapshot_ref: str) -> List[str]:
        """Datastore paths of the disks as seen by the snapshot."""
        pass

    @abstractmethod
    def query_changed_disk_areas(self, vm: Any, snapshot_ref: str, device_key: int,
                                 start_offset: int, change_id: str) -> ChangedDiskAreas:
        """
        Query changed areas of a disk since a checkpoint token.

        Raises:
            ChangedAreaQueryError: If the query fails
        """
        pass

    @abstractmethod
    def find_vm_by_bios_serial(self, serial: str) -> Optional[Any]:
        """Find a VM by its BIOS serial number (used to locate the proxy VM itself)."""
        pass

    @abstractmethod
    def find_orphaned_disk_uuids(self, proxy_vm: Any, target_vm: Any) -> List[str]:
        """UUIDs of target VM disks that are still attached to the proxy VM."""
        pass

    @abstractmethod
    def detach_disks(self, vm: Any, disk_uuids: List[str]) -> None:
        pass

    def remove_orphaned_snapshots(self, vm: Any, max_age: int = 3600,
                                  now: Optional[float] = None) -> int:
        """
        Remove backup snapshots left behind by earlier sessions.

        Only snapshots named like "vSiris Backup <epoch>" and older than
        max_age seconds are touched; user snapshots never match. Removal is
        leaf-first along the chain. A failed removal is logged and skipped.

        Returns:
            Number of backup snapshots still present
        """
        now = time.time() if now is None else now
        remaining = 0

        for snapshot in reversed(self.get_snapshot_chain(vm)):
            match = BACKUP_SNAPSHOT_PATTERN.match(snapshot.name)
            if not match:
                continue

            created = int(match.group(1))
            if now - created <= max_age:
                remaining += 1
                continue

            try:
                logger.info(f"Removing orphaned snapshot '{snapshot.name}' ({snapshot.ref})")
                self.remove_snapshot(vm, snapshot.ref)
            except Exception as e:
                logger.warning(f"Failed to remove orphaned snapshot '{snapshot.name}': {e}")
                remaining += 1

        return remaining


ClientFactory = Callable[[str, str, str], HypervisorClient]


class ConnectionCache:
    """
    Cache of connected hypervisor clients with a fixed lifetime.

    Entries are keyed by host, user and a hash of the password, and are
    evicted ttl seconds after they were created.
    """

    def __init__(self, factory: ClientFactory, ttl: float = 600):
        self.factory = factory
        self.ttl = ttl
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str, str], Tuple[float, HypervisorClient]] = {}

    @staticmethod
    def _key(host: str, user: str, password: str) -> Tuple[str, str, str]:
        return host, user, hashlib.sha256(password.encode()).hexdigest()

    def get(self, host: str, user: str, password: str) -> HypervisorClient:
        """Return a cached client or connect a new one."""
        key = self._key(host, user, password)
        now = time.time()
        with self._lock:
            self._evict_expired(now)
            entry = self._entries.get(key)
            if entry:
                return entry[1]

            logger.debug(f"Connecting hypervisor client for {user}@{host}")
            client = self.factory(host, user, password)
            self._entries[key] = (now, client)
            return client

    def invalidate(self, host: str, user: str, password: str):
        with self._lock:
            self._entries.pop(self._key(host, user, password), None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired(time.time())
            return len(self._entries)

    def _evict_expired(self, now: float):
        expired = [k for k, (created, _) in self._entries.items() if now - created >= self.ttl]
        for key in expired:
            del self._entries[key]


def compare_versions(version: str, other: str) -> int:
    """
    Compare dotted version strings numerically.

    Returns:
        -1, 0 or 1
    """
    def _parts(v: str) -> List[int]:
        return [int(p) for p in re.findall(r"\d+", v)]

    a, b = _parts(version), _parts(other)
    length = max(len(a), len(b))
    a += [0] * (length - len(a))
    b += [0] * (length - len(b))
    return (a > b) - (a < b)
