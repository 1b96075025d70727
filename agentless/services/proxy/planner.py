"""
Changed region planning for volume backups.

For each requested volume the planner finds the backing disk (and, for
partition backups, the partition byte range), asks the hypervisor which
areas changed since the volume's checkpoint token, clips those areas to the
volume and translates them into destination offsets.

CBT is not always trustworthy, so planning degrades in steps:

    incremental query fails  -> query again with "*" (full, diff-merge)
    "*" query fails as well  -> one area covering the whole volume (full_no_cbt)
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from agentless.services.proxy.checkpoint_token import FULL_BACKUP_TOKEN
from agentless.services.proxy.hypervisor import ChangedAreaQueryError

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
# Partition images are written behind a 63-sector MBR gap
MBR_OFFSET = 63 * SECTOR_SIZE


class BackupJobError(Exception):
    """Exception raised when a backup job cannot be planned or executed."""
    pass


class BackupType(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    FULL_NO_CBT = "full_no_cbt"


@dataclass
class ChangedArea:
    """A byte range to copy from the source disk into the destination image."""
    source_offset: int
    destination_offset: int
    length: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "source_offset": self.source_offset,
            "destination_offset": self.destination_offset,
            "length": self.length,
        }


@dataclass
class BackupJob:
    """Everything needed to back up one volume."""
    source_path: str
    destination_path: str
    old_token: str
    new_token: str
    token_file: str
    volume_id: str
    backup_type: BackupType
    diff_merge: bool = False
    changed_areas: List[ChangedArea] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(area.length for area in self.changed_areas)

    @property
    def status_type(self) -> str:
        """Backup type as reported in the backup status document."""
        return "diff_merge" if self.diff_merge else self.backup_type.value


class ScanKind(str, enum.Enum):
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ChangedAreaScan:
    """Result of scanning a whole disk for changed areas with one token."""
    kind: ScanKind
    areas: List[ChangedArea] = field(default_factory=list)
    change_count: int = 0
    error: Optional[Exception] = None


@dataclass
class VolumeBounds:
    """Byte range of a volume on its disk (end inclusive) and where it lands in the destination."""
    start: int
    end: int
    size: int
    destination_offset: int


def clip_changed_area(start: int, length: int, part_start: int, part_end: int) -> Optional[Tuple[int, int]]:
    """
    Clip a changed area to [part_start, part_end] (inclusive).

    Returns:
        (clipped_start, clipped_length), or None if the area lies outside
    """
    end = start + length - 1
    if start > part_end or end < part_start:
        return None

    start = max(start, part_start)
    end = min(end, part_end)
    return start, end - start + 1


def find_disk_vmdk(disk_uuid: str, vmdks: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for vmdk in vmdks:
        if vmdk.get("diskUuid") == disk_uuid:
            return vmdk
    return None


def find_partition_vmdk(guid: str, vmdks: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for vmdk in vmdks:
        if find_partition(guid, vmdk):
            return vmdk
    return None


def find_partition(guid: str, vmdk: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for partition in vmdk.get("partitions") or []:
        if partition.get("guid") == guid:
            return partition
    return None


class ChangedRegionPlanner:
    """Build BackupJobs from CBT changed areas."""

    def __init__(self, log_callback=None):
        """
        Args:
            log_callback: Optional callback for logging (level, message, details)
        """
        self.log_callback = log_callback

    def _log(self, level: str, message: str, details: dict = None):
        log_func = getattr(logger, level.lower(), logger.info)
        log_func(message)
        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    def plan(
        self,
        session,
        volumes: List[str],
        tokens: List[str],
        destinations: List[str],
        token_files: List[str],
        diff_merge: bool,
    ) -> List[BackupJob]:
        """
        Plan one job per backed-up volume.

        Volumes that are not found on any disk, or whose disk cannot be
        snapshotted (e.g. physical RDMs), are skipped with a warning.

        Args:
            session: Loaded AgentlessSession
            volumes: Volume GUIDs (disk UUIDs for full disk backups)
            tokens: Old checkpoint token per volume
            destinations: Destination image per volume
            token_files: Checkpoint token file per volume
            diff_merge: Force diff-merge for every volume

        Raises:
            BackupJobError: If a volume's partition is missing from its disk
        """
        jobs = []
        vmdks = session.vmdk_info

        for i, volume in enumerate(volumes):
            self._log("INFO", f"Processing volume {volume}")

            if session.full_disk_backup:
                vmdk = find_disk_vmdk(volume, vmdks)
            else:
                vmdk = find_partition_vmdk(volume, vmdks)

            if not vmdk:
                self._log("WARNING", f"Volume {volume} not found in any vmdk, skipping")
                continue

            if vmdk.get("canSnapshot") is False:
                self._log("WARNING", f"Disk of volume {volume} cannot be snapshotted, skipping")
                continue

            source = vmdk["diskPath"] if session.is_using_remote_clone else vmdk["localDiskPath"]
            bounds = self.get_volume_bounds(volume, vmdk, session.full_disk_backup)

            jobs.append(self.plan_volume(
                session,
                source,
                tokens[i],
                vmdk,
                bounds,
                destinations[i],
                token_files[i],
                diff_merge,
                volume,
            ))

        return jobs

    @staticmethod
    def get_volume_bounds(volume: str, vmdk: Dict[str, Any], full_disk: bool) -> VolumeBounds:
        disk_size = int(vmdk["diskSizeKiB"]) * 1024
        if full_disk:
            return VolumeBounds(start=0, end=disk_size - 1, size=disk_size, destination_offset=0)

        partition = find_partition(volume, vmdk)
        if not partition:
            raise BackupJobError("Partition does not exist for volume.")
        return VolumeBounds(
            start=int(partition["part_start"]),
            end=int(partition["part_end"]),
            size=int(partition["part_size"]),
            destination_offset=MBR_OFFSET,
        )

    def plan_volume(
        self,
        session,
        source: str,
        old_token: str,
        vmdk: Dict[str, Any],
        bounds: VolumeBounds,
        destination: str,
        token_file: str,
        diff_merge: bool,
        volume: str,
    ) -> BackupJob:
        """Plan the job of one volume, walking the fallback ladder when CBT fails."""
        new_token = vmdk.get("changeId") or ""

        if not old_token:
            self._log("WARNING", "Empty checkpoint token, defaulting to '*' and doing diff-merge")
            old_token = FULL_BACKUP_TOKEN
            diff_merge = True

        backup_type = BackupType.FULL if old_token == FULL_BACKUP_TOKEN else BackupType.INCREMENTAL

        scan = self.scan_changed_areas(session, vmdk, old_token, bounds)

        if scan.kind == ScanKind.FAILED and old_token != FULL_BACKUP_TOKEN:
            self._log("ERROR", f"Error querying changed disk areas with token {old_token}, attempting full backup: {scan.error}")
            old_token = FULL_BACKUP_TOKEN
            diff_merge = True
            backup_type = BackupType.FULL
            scan = self.scan_changed_areas(session, vmdk, old_token, bounds)

        if scan.kind == ScanKind.FAILED:
            self._log("ERROR", f"Error querying changed disk areas with token '*': {scan.error}")
            self._log("WARNING", "Skipping CBT, doing completely full backup (allocated and unallocated)")
            return self.full_no_cbt_job(source, destination, bounds, new_token, token_file, volume, diff_merge)

        self._log("INFO", f"Backing up {len(scan.areas)} changed area(s) of volume {volume}",
                  {"changeCount": scan.change_count})
        return BackupJob(
            source_path=source,
            destination_path=destination,
            old_token=old_token,
            new_token=new_token,
            token_file=token_file,
            volume_id=volume,
            backup_type=backup_type,
            diff_merge=diff_merge,
            changed_areas=scan.areas,
        )

    def scan_changed_areas(self, session, vmdk: Dict[str, Any], token: str,
                           bounds: VolumeBounds) -> ChangedAreaScan:
        """
        Walk the whole disk with one token, clipping every area to the volume.

        The cursor advances by what the server reports it covered
        (startOffset + length), not by a locally computed window.
        """
        disk_size = int(vmdk["diskSizeKiB"]) * 1024
        device_key = vmdk["deviceKey"]
        areas: List[ChangedArea] = []
        change_count = 0
        start_pos = 0

        while True:
            logger.debug(f"Querying changed disk areas from {start_pos} with token {token}")
            try:
                changes = session.client.query_changed_disk_areas(
                    session.vm, session.snapshot_ref, device_key, start_pos, token
                )
            except Exception as e:
                return ChangedAreaScan(kind=ScanKind.FAILED, error=e)

            batch = changes.changed_area or []
            change_count = len(batch)
            for area in batch:
                clipped = clip_changed_area(area.start, area.length, bounds.start, bounds.end)
                if clipped is None:
                    continue
                clipped_start, clipped_length = clipped
                areas.append(ChangedArea(
                    source_offset=clipped_start,
                    destination_offset=bounds.destination_offset + (clipped_start - bounds.start),
                    length=clipped_length,
                ))

            next_pos = changes.start_offset + changes.length
            if next_pos <= start_pos:
                return ChangedAreaScan(
                    kind=ScanKind.FAILED,
                    error=ChangedAreaQueryError(f"Changed area query made no progress at offset {start_pos}"),
                )
            start_pos = next_pos
            if start_pos >= disk_size:
                break

        return ChangedAreaScan(kind=ScanKind.COMPLETE, areas=areas, change_count=change_count)

    @staticmethod
    def full_no_cbt_job(source: str, destination: str, bounds: VolumeBounds, new_token: str,
                        token_file: str, volume: str, diff_merge: bool) -> BackupJob:
        """A job copying the whole volume, allocated or not, without CBT."""
        return BackupJob(
            source_path=source,
            destination_path=destination,
            old_token="",
            new_token=new_token,
            token_file=token_file,
            volume_id=volume,
            backup_type=BackupType.FULL_NO_CBT,
            diff_merge=diff_merge,
            changed_areas=[ChangedArea(
                source_offset=bounds.start,
                destination_offset=bounds.destination_offset,
                length=bounds.size,
            )],
        )
