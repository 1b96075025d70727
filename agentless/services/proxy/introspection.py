"""
Guest introspection interface.

Produces the volume/partition layout of the snapshot disks and guest OS
metadata. Implementations are provided outside this package.
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict


class GuestIntrospection(ABC):
    """Abstract base class for guest filesystem introspection."""

    @abstractmethod
    def initialize(self, vm: Any, snapshot_ref: str, mount_path: str) -> None:
        """Open the mounted snapshot disks for inspection."""
        pass

    @abstractmethod
    def retrieve_volume_metadata(self) -> Dict[str, Any]:
        """
        Volume layout of the VM disks.

        Returns:
            Dictionary with "vmdkInfo": a list of disks, each with changeId,
            diskPath, diskSizeKiB, deviceKey, diskUuid, localDiskPath,
            canSnapshot, isGpt and partitions (part_start, part_end,
            part_size, guid; byte offsets, part_end inclusive)
        """
        pass

    @abstractmethod
    def retrieve_guest_metadata(self) -> Dict[str, Any]:
        """Guest OS metadata (hostname, OS, volumes)."""
        pass

    @abstractmethod
    def shutdown(self) -> None:
        pass


IntrospectionFactory = Callable[[], GuestIntrospection]
