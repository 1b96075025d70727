"""
VDDK fuse mount management.

Snapshot disks are exposed locally by an external fuse helper. The helper
double-forks, so its PID is resolved afterwards by searching for a process
whose command line references the mount point. Mount table state and
helper liveness can diverge after a crash, which is why unmount() looks at
both before deciding what to do.
"""

import hashlib
import logging
import os
import re
import shutil
import socket
import ssl
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

import psutil
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from agentless.services.proxy.background import BackgroundTaskError, wait_until
from agentless.services.proxy.hypervisor import compare_versions
from agentless.services.proxy.processes import find_pid_by_cmdline, force_kill, is_process_running

logger = logging.getLogger(__name__)

TRANSPORT_XATTR = "vddk.transport"
UNKNOWN_TRANSPORT = "unknown"
SSL_THUMBPRINT_TIMEOUT = 5


class MountError(Exception):
    """Exception raised for mount helper failures and inconsistent mount states."""
    pass


def select_library_version(host_version: str) -> str:
    """Transfer library version compatible with a host version."""
    if compare_versions(host_version, "6.0") >= 0:
        return "6.7"
    return "6.0"


class MountManager:
    """Mount and unmount snapshot disks through the fuse helper."""

    def __init__(
        self,
        helper_binary: str = "vddk-fuse",
        process_pattern: str = "vddk-mount",
        unmount_timeout: float = 180,
        vmware_temp_path: str = "/tmp/vmware-root",
    ):
        self.helper_binary = helper_binary
        self.process_pattern = process_pattern
        self.unmount_timeout = unmount_timeout
        self.vmware_temp_path = Path(vmware_temp_path)

    def mount(
        self,
        host: str,
        user: str,
        password: str,
        vm_ref: str,
        snapshot_ref: str,
        disk_paths: List[str],
        mount_point: str,
        host_version: str,
        force_nbd: bool = False,
    ) -> int:
        """
        Mount snapshot disks under mount_point.

        Credentials reach the helper through its environment and stdin,
        never through argv.

        Returns:
            PID of the running helper

        Raises:
            MountError: If the helper fails or its process cannot be found
        """
        Path(mount_point).mkdir(parents=True, exist_ok=True)

        options = ",".join([
            f"host={host}",
            f"vm_id={vm_ref}",
            f"snapshot_id={snapshot_ref}",
            f"ssl_thumb={self.get_ssl_thumbprint(host)}",
            f"force_nbd={int(force_nbd)}",
            f"sdk_ver={select_library_version(host_version)}",
            "allow_other",
        ])
        command = [self.helper_binary, "-o", options, *disk_paths, str(mount_point)]
        env = dict(os.environ, ESX_USERNAME=user)

        logger.info(f"Mounting {len(disk_paths)} disk(s) of {vm_ref} at {mount_point}")
        try:
            subprocess.run(command, input=password, env=env, check=True,
                           capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise MountError(f"Mount helper failed with code {e.returncode}: {e.stderr.strip()}") from e

        pid = self.get_helper_pid(mount_point)
        if pid is None:
            raise MountError(f"Mount helper process for {mount_point} not found after mount")

        logger.info(f"Mounted {mount_point}, helper PID {pid}")
        return pid

    def unmount(self, mount_point: str):
        """
        Unmount, deciding from mount table state and helper liveness.

        Raises:
            MountError: For every state other than a clean, mounted helper
                (after force-unmounting a mount whose helper died)
        """
        pid = self.get_helper_pid(mount_point)
        in_mount_table = self.is_in_mount_table(mount_point)

        if pid and in_mount_table:
            logger.info(f"Unmounting {mount_point} (helper PID {pid})")
            self._run_unmount(["fusermount", "-u", str(mount_point)])
            try:
                wait_until(lambda: not is_process_running(pid), self.unmount_timeout,
                           poll_interval=1, description=f"mount helper {pid} to exit")
            except BackgroundTaskError as e:
                raise MountError(f"Mount helper did not exit after unmount: {e}") from e
        elif in_mount_table:
            logger.warning(f"{mount_point} is mounted but the helper is not running, forcing unmount")
            self._run_unmount(["umount", str(mount_point)])
            raise MountError(f"{mount_point} was mounted but process was not running")
        elif pid:
            raise MountError(f"{mount_point} is not mounted but helper PID {pid} is running")
        else:
            raise MountError(f"{mount_point} is unexpectedly clean, nothing to unmount")

    def ensure_clean(self, mount_point: str, vm_ref: str, bios_uuid: str):
        """Kill any lingering helper for mount_point and drop stale helper temp files."""
        pid = self.get_helper_pid(mount_point)
        if pid:
            logger.warning(f"Killing lingering mount helper {pid} for {mount_point}")
            force_kill(pid)

        temp_dir = self.vmware_temp_path / f"{bios_uuid}-{vm_ref}"
        if temp_dir.exists():
            logger.info(f"Removing stale helper directory {temp_dir}")
            shutil.rmtree(temp_dir)

    def is_mounted(self, mount_point: str) -> bool:
        return self.get_helper_pid(mount_point) is not None

    def list_transport_methods(self, mount_point: str) -> List[Dict[str, str]]:
        """
        Transport used by the helper for each mounted disk.

        Raises:
            MountError: If nothing is mounted at mount_point
        """
        if not self.is_mounted(mount_point):
            raise MountError(f"Nothing mounted at {mount_point}")

        methods = []
        for path in sorted(Path(mount_point).glob("*")):
            try:
                transport = os.getxattr(str(path), TRANSPORT_XATTR).decode().strip() or UNKNOWN_TRANSPORT
            except OSError:
                transport = UNKNOWN_TRANSPORT
            methods.append({"diskPath": str(path), "transport": transport})
        return methods

    def get_helper_pid(self, mount_point: str) -> Optional[int]:
        pattern = f"^{re.escape(self.process_pattern)}.*{re.escape(str(mount_point))}"
        return find_pid_by_cmdline(pattern)

    @staticmethod
    def is_in_mount_table(mount_point: str) -> bool:
        target = os.path.normpath(str(mount_point))
        return any(
            os.path.normpath(part.mountpoint) == target
            for part in psutil.disk_partitions(all=True)
        )

    @staticmethod
    def get_ssl_thumbprint(host: str, port: int = 443, timeout: float = SSL_THUMBPRINT_TIMEOUT) -> str:
        """SHA-1 thumbprint of the host certificate, colon separated."""
        # Only the fingerprint is wanted, the certificate is not verified
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        with socket.create_connection((host, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=host) as tls:
                der = tls.getpeercert(binary_form=True)
        digest = hashlib.sha1(der).hexdigest().upper()
        return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))

    @staticmethod
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(2),
        retry=retry_if_exception_type(subprocess.CalledProcessError),
        reraise=True,
    )
    def _run_unmount(command: List[str]):
        subprocess.run(command, check=True, capture_output=True, text=True)
