"""
Agentless session lifecycle.

A session is the snapshot-and-mount context backups run in. Creating one
walks a persisted state machine (pre-cleanup, snapshot, mount, metadata,
ready); cleaning it up unmounts, removes the snapshot and archives the
session documents. Every step runs under the session lock, and every
fatal error is persisted as FAILED before it propagates so that pollers in
other processes see it.

Session state directory layout: see SessionPaths.
"""

import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from tenacity import retry, stop_after_attempt, wait_fixed

from agentless.core.config import Settings, settings as default_settings
from agentless.core.encryption import decrypt_password, encrypt_password, write_secret_file
from agentless.services.proxy.background import BackgroundLauncher, proxy_command
from agentless.services.proxy.hypervisor import (
    BACKUP_SNAPSHOT_PREFIX,
    BypassedVcenterError,
    ConnectionCache,
    HypervisorClient,
    compare_versions,
)
from agentless.services.proxy.introspection import IntrospectionFactory
from agentless.services.proxy.mount import MountError, MountManager
from agentless.services.proxy.paths import SessionPaths
from agentless.services.proxy.processes import (
    is_process_running,
    kill_process,
    read_pid_file,
    write_pid_file,
)
from agentless.services.proxy.session_id import SessionIdentity
from agentless.services.proxy.session_lock import SessionBusyError, SessionError, SessionLock
from agentless.services.proxy.session_status import TERMINAL_STATUSES, SessionStatus, SessionStatusService
from agentless.services.proxy.state_store import StateStore

logger = logging.getLogger(__name__)

REMOTE_CLONE_MIN_HOST_VERSION = "6.7"
DMI_VENDOR_PATH = "/sys/class/dmi/id/sys_vendor"
DMI_SERIAL_PATH = "/sys/class/dmi/id/product_serial"


class SessionNotFoundError(SessionError):
    """Exception raised when a session has no persisted session info."""
    pass


class SessionCreationError(SessionError):
    """Exception raised for fatal errors while creating a session."""
    pass


class TransferMethod(str, enum.Enum):
    LOCAL_COPY = "local-copy"        # mercuryftp from the local fuse mount
    REMOTE_CLONE = "remote-clone"    # hyper-shuttle straight from the host


class SessionInfo(BaseModel):
    """Persisted session info document."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    host: str
    user: str
    password: str  # encrypted
    vm_ref: str = Field(alias="vmMoRefId")
    snapshot_ref: str = Field(alias="snapshotMoRefId")
    full_disk_backup: bool = Field(default=False, alias="fullDiskBackup")
    transfer_method: TransferMethod = Field(default=TransferMethod.LOCAL_COPY, alias="transferMethod")
    force_nbd: bool = Field(default=False, alias="forceNbd")


@dataclass
class AgentlessSession:
    """A loaded session and the hypervisor objects it refers to."""
    identity: SessionIdentity
    host: str
    user: str
    password: str
    vm_ref: str
    snapshot_ref: str
    transfer_method: TransferMethod
    client: HypervisorClient
    vm: Any
    full_disk_backup: bool = False
    force_nbd: bool = False
    volume_metadata: Dict[str, Any] = field(default_factory=dict)
    guest_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_using_remote_clone(self) -> bool:
        return self.transfer_method == TransferMethod.REMOTE_CLONE

    @property
    def vmdk_info(self) -> List[Dict[str, Any]]:
        return self.volume_metadata.get("vmdkInfo", [])


def read_proxy_dmi() -> Tuple[str, str]:
    """DMI system vendor and product serial of the machine the proxy runs on."""
    def _read(path: str) -> str:
        try:
            return Path(path).read_text().strip()
        except OSError:
            return ""
    return _read(DMI_VENDOR_PATH), _read(DMI_SERIAL_PATH)


class SessionLifecycleManager:
    """
    Create, load and clean up agentless sessions.

    Each instance belongs to one process. Session locks it acquires stay
    held until release_all() is called or the process exits.
    """

    def __init__(
        self,
        connections: ConnectionCache,
        introspection_factory: Optional[IntrospectionFactory] = None,
        mount_manager: Optional[MountManager] = None,
        store: Optional[StateStore] = None,
        launcher: Optional[BackgroundLauncher] = None,
        config: Optional[Settings] = None,
        proxy_dmi_reader: Callable[[], Tuple[str, str]] = read_proxy_dmi,
        log_callback=None,
    ):
        """
        Initialize the lifecycle manager.

        Args:
            connections: Cache of hypervisor clients
            introspection_factory: Builds a GuestIntrospection for metadata retrieval
            mount_manager: Fuse mount manager
            store: Persisted state store
            launcher: Background task launcher
            config: Settings, defaults to the global settings
            proxy_dmi_reader: Returns (vendor, serial) of the proxy machine
            log_callback: Optional callback for logging (level, message, details)
        """
        self.config = config or default_settings
        self.connections = connections
        self.introspection_factory = introspection_factory
        self.mount_manager = mount_manager or MountManager(
            helper_binary=self.config.MOUNT_HELPER_BINARY,
            process_pattern=self.config.MOUNT_HELPER_PROCESS_PATTERN,
            unmount_timeout=self.config.UNMOUNT_TIMEOUT,
            vmware_temp_path=self.config.VMWARE_TEMP_PATH,
        )
        self.store = store or StateStore()
        self.launcher = launcher or BackgroundLauncher(timeout=self.config.BACKGROUND_TASK_START_TIMEOUT)
        self.proxy_dmi_reader = proxy_dmi_reader
        self.log_callback = log_callback
        self._locks: Dict[str, SessionLock] = {}

    def _log(self, level: str, message: str, details: dict = None):
        """Log message via callback and standard logger."""
        log_func = getattr(logger, level.lower(), logger.info)
        log_func(message)
        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    # ------------------------------------------------------------------
    # Paths, status and locks
    # ------------------------------------------------------------------

    def paths(self, identity: SessionIdentity) -> SessionPaths:
        return SessionPaths(self.config.SESSION_BASE_PATH, identity)

    def status_service(self, identity: SessionIdentity) -> SessionStatusService:
        return SessionStatusService(self.paths(identity).status, self.store)

    def session_lock(self, identity: SessionIdentity) -> SessionLock:
        """The lock object for a session, shared by all callers in this process."""
        name = identity.to_name()
        if name not in self._locks:
            self._locks[name] = SessionLock(self.paths(identity).lock)
        return self._locks[name]

    def acquire_session_lock(self, identity: SessionIdentity) -> SessionLock:
        """
        Take the session lock without waiting.

        Raises:
            SessionBusyError: If another live process holds it
        """
        lock = self.session_lock(identity)
        if lock.held:
            return lock
        try:
            return lock.acquire()
        except SessionBusyError:
            self._log("ERROR", f"Session {identity} is busy")
            raise

    def release_all(self):
        for lock in self._locks.values():
            lock.release()

    def is_session_locked(self, identity: SessionIdentity) -> bool:
        return self.session_lock(identity).is_locked()

    def is_session_initialized(self, identity: SessionIdentity) -> bool:
        return self.paths(identity).session_info.is_file()

    def wait_until_session_is_released(self, identity: SessionIdentity, timeout: Optional[float] = None):
        """
        Wait for other processes to let go of the session lock.

        Raises:
            SessionBusyError: On timeout
        """
        timeout = self.config.SESSION_RELEASE_TIMEOUT if timeout is None else timeout
        self._log("INFO", f"Waiting for session {identity} to be released")
        try:
            self.session_lock(identity).wait_until_released(timeout)
        except SessionBusyError:
            self._log("ERROR", "Timeout reached while waiting for session to be released")
            raise
        self._log("INFO", "Session released")

    # ------------------------------------------------------------------
    # Liveness of backup and initialization processes
    # ------------------------------------------------------------------

    def get_backup_running_pid(self, identity: SessionIdentity) -> Optional[int]:
        return read_pid_file(self.paths(identity).backup_pid)

    def save_backup_running_pid(self, identity: SessionIdentity):
        write_pid_file(self.paths(identity).backup_pid, os.getpid())

    def is_backup_running(self, identity: SessionIdentity) -> bool:
        return is_process_running(self.get_backup_running_pid(identity))

    def kill_running_backup(self, identity: SessionIdentity) -> bool:
        return kill_process(self.get_backup_running_pid(identity))

    def get_backup_job_id(self, identity: SessionIdentity) -> Optional[str]:
        try:
            return self.paths(identity).backup_job_id.read_text().strip() or None
        except FileNotFoundError:
            return None

    def save_backup_job_id(self, identity: SessionIdentity, job_id: str):
        path = self.paths(identity).backup_job_id
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(job_id)

    def is_session_initializing(self, identity: SessionIdentity) -> bool:
        return is_process_running(read_pid_file(self.paths(identity).init_pid))

    def kill_initializing_session(self, identity: SessionIdentity) -> bool:
        return kill_process(read_pid_file(self.paths(identity).init_pid))

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def generate_session_id(self, host: str, user: str, password: str,
                            vm_name: str, asset_key: str) -> SessionIdentity:
        client = self.connections.get(host, user, password)
        return SessionIdentity.generate(client, vm_name, asset_key)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_session_background(
        self,
        host: str,
        user: str,
        password: str,
        vm_name: str,
        asset_key: str,
        force_nbd: bool = False,
        full_disk_backup: bool = False,
    ) -> SessionIdentity:
        """
        Start session creation in a background process.

        Any previous initialization or backup for the same identity is
        killed and its lock released before the new process starts.
        Returns once the new process holds the session lock.

        Raises:
            SessionBusyError: If the old session was not released in time
            BackgroundTaskError: If the new process did not start in time
        """
        identity = self.generate_session_id(host, user, password, vm_name, asset_key)
        paths = self.paths(identity)
        password_file = write_secret_file(paths.secret_file, password, self.config.SECRET_KEY)

        command = proxy_command(
            "initialize",
            "--host", host,
            "--user", user,
            "--password-file", str(password_file),
            "--vm-name", vm_name,
            "--agentless-session", identity.to_name(),
        )
        if force_nbd:
            command.append("--force-nbd")
        if full_disk_backup:
            command.append("--full-disk")

        if self.is_session_initializing(identity):
            self._log("WARNING", "Session was initializing in the background, killing it")
            self.kill_initializing_session(identity)

        if self.is_backup_running(identity):
            self._log("WARNING", "A backup was running in the background, killing it")
            self.kill_running_backup(identity)

        self.wait_until_session_is_released(identity)

        self.launcher.launch(
            command,
            f"initialize {identity}",
            ready=lambda process: (
                SessionLock(paths.lock, expected_owner_pid=process.pid).is_held_by_live_owner()
            ),
            output_path=paths.background_log,
        )
        self._log("INFO", f"Session initialization started in the background for {identity}")
        return identity

    def create_session(
        self,
        host: str,
        user: str,
        password: str,
        vm_name: str,
        identity: SessionIdentity,
        force_nbd: bool = False,
        full_disk_backup: bool = False,
    ) -> AgentlessSession:
        """
        Create a session: pre-cleanup, snapshot, mount, metadata, ready.

        The session lock stays held on return and on failure; it is released
        when the process exits.

        Raises:
            SessionBusyError: If another live process holds the session
            Exception: Any fatal error, after the status was set to FAILED
        """
        self.acquire_session_lock(identity)
        status = self.status_service(identity)

        self._log("INFO", f"Initializing status for session {identity}")
        status.initialize()
        write_pid_file(self.paths(identity).init_pid, os.getpid())

        try:
            client = self.connections.get(host, user, password)
            self._do_pre_cleanup(client, vm_name, identity)
            return self._do_create(client, host, user, password, vm_name, identity,
                                   force_nbd, full_disk_backup)
        except Exception as e:
            self._log("ERROR", f"Error while creating session: {e}")
            status.set_error(str(e))
            raise

    def _do_pre_cleanup(self, client: HypervisorClient, vm_name: str, identity: SessionIdentity):
        """Leave the hypervisor and the proxy as clean as possible before a new session."""
        status = self.status_service(identity)
        status.set_status(SessionStatus.PRE_CLEANING)

        self.cleanup_session(identity, on_pre_cleanup=True)
        status.set_status(SessionStatus.PRE_CLEANING)

        vm = client.retrieve_virtual_machine(vm_name)
        bios_uuid = client.get_bios_uuid(vm)
        self.mount_manager.ensure_clean(str(self.paths(identity).mount_point), identity.vm_ref, bios_uuid)

        self._pre_cleanup_shared_environment(client, vm)

        status.set_status(SessionStatus.PRE_CLEANING, "Ensure CBT is enabled")
        client.set_cbt_enabled(vm, True)

        status.set_status(SessionStatus.PRE_CLEANING, "Removing orphaned snapshots")
        left = client.remove_orphaned_snapshots(vm, max_age=self.config.ORPHANED_SNAPSHOT_MAX_AGE)
        if left:
            self._log("INFO", f"{left} recent backup snapshot(s) left in place")

    def _get_proxy_vm(self, client: HypervisorClient) -> Optional[Any]:
        """The VM this proxy runs in, when the proxy is itself a VMware guest."""
        vendor, serial = self.proxy_dmi_reader()
        if "vmware" not in vendor.lower() or not serial:
            return None
        return client.find_vm_by_bios_serial(serial)

    def _pre_cleanup_shared_environment(self, client: HypervisorClient, vm: Any):
        """Detach target VM disks still attached to the proxy VM (best-effort)."""
        try:
            proxy_vm = self._get_proxy_vm(client)
            if proxy_vm is None:
                return

            if client.is_running_on_snapshots(proxy_vm):
                self._log("WARNING", "Proxy VM is running on snapshots")

            orphaned = client.find_orphaned_disk_uuids(proxy_vm, vm)
            if orphaned:
                self._log("WARNING", f"Detaching {len(orphaned)} disk(s) of the target VM from the proxy VM",
                          {"diskUuids": orphaned})
                client.detach_disks(proxy_vm, orphaned)
        except Exception as e:
            self._log("WARNING", f"Failed to clean up disks shared with the proxy VM: {e}")

    def _proxy_holds_target_disks(self, client: HypervisorClient, vm: Any) -> bool:
        proxy_vm = self._get_proxy_vm(client)
        if proxy_vm is None:
            return False
        return bool(client.find_orphaned_disk_uuids(proxy_vm, vm))

    def _do_create(
        self,
        client: HypervisorClient,
        host: str,
        user: str,
        password: str,
        vm_name: str,
        identity: SessionIdentity,
        force_nbd: bool,
        full_disk_backup: bool,
    ) -> AgentlessSession:
        status = self.status_service(identity)
        paths = self.paths(identity)

        vm = client.retrieve_virtual_machine(vm_name)
        paths.root.mkdir(parents=True, exist_ok=True)

        try:
            client.validate_connection()
        except BypassedVcenterError as e:
            self._log("WARNING", f"Connected to a vCenter managed host directly: {e}")
            status.set_bypassing_management_server(True)
        except Exception as e:
            self._log("WARNING", f"Connection validation failed: {e}")

        if client.is_running_on_snapshots(vm):
            self._log("WARNING", "VM is running on snapshots")

        host_version = client.get_esx_host_version(vm)
        if not host_version:
            raise SessionCreationError("No ESX host version found.")
        status.set_host_version(host_version)

        status.set_status(SessionStatus.CREATE_SNAPSHOT)
        snapshot_ref = self._create_snapshot(client, vm)

        disk_paths = client.retrieve_vmdk_paths(vm, snapshot_ref)
        status.set_status(SessionStatus.MOUNT)
        mount_point = str(paths.mount_point)
        self.mount_manager.mount(
            host, user, password, identity.vm_ref, snapshot_ref,
            disk_paths, mount_point, host_version, force_nbd,
        )

        try:
            for disk in self.mount_manager.list_transport_methods(mount_point):
                self._log("INFO", f"Disk {disk['diskPath']} transport: {disk['transport']}")
        except MountError as e:
            self._log("WARNING", f"Could not read transport methods: {e}")

        volume_metadata, guest_metadata = self._retrieve_metadata(status, vm, snapshot_ref, mount_point)

        transfer_method = self._get_transfer_method(host_version)
        if transfer_method == TransferMethod.REMOTE_CLONE:
            self._log("INFO", "Remote clone transfer selected, releasing local mount")
            self.mount_manager.unmount(mount_point)

        session = AgentlessSession(
            identity=identity,
            host=host,
            user=user,
            password=password,
            vm_ref=identity.vm_ref,
            snapshot_ref=snapshot_ref,
            transfer_method=transfer_method,
            client=client,
            vm=vm,
            full_disk_backup=full_disk_backup,
            force_nbd=force_nbd,
            volume_metadata=volume_metadata,
            guest_metadata=guest_metadata,
        )
        self.save_session(session)
        status.set_status(SessionStatus.READY, "")
        self._log("INFO", f"Session {identity} is ready ({transfer_method.value})")
        return session

    def _create_snapshot(self, client: HypervisorClient, vm: Any) -> str:
        """
        Create a quiesced, memory-less backup snapshot, retrying once.

        Raises:
            SessionCreationError: If the retry fails as well
        """
        @retry(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.config.SNAPSHOT_RETRY_DELAY),
            before_sleep=lambda state: self._log(
                "WARNING", f"Snapshot creation failed, retrying: {state.outcome.exception()}"
            ),
            reraise=True,
        )
        def _attempt() -> str:
            name = f"{BACKUP_SNAPSHOT_PREFIX} {int(time.time())}"
            return client.create_snapshot(vm, name, "Agentless backup snapshot",
                                          memory=False, quiesce=True)

        try:
            snapshot_ref = _attempt()
        except Exception as e:
            raise SessionCreationError(
                f"Failed to create VM snapshot after second attempt - aborting: {e}"
            ) from e

        self._log("INFO", f"Created snapshot {snapshot_ref}")
        return snapshot_ref

    def _retrieve_metadata(self, status: SessionStatusService, vm: Any,
                           snapshot_ref: str, mount_point: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if self.introspection_factory is None:
            raise SessionCreationError("No guest introspection service configured")

        status.set_status(SessionStatus.ESX_INFO)
        introspection = self.introspection_factory()
        try:
            introspection.initialize(vm, snapshot_ref, mount_point)
            volume_metadata = introspection.retrieve_volume_metadata()

            status.set_status(SessionStatus.AGENT_INFO)
            guest_metadata = introspection.retrieve_guest_metadata()
        finally:
            introspection.shutdown()

        return volume_metadata, guest_metadata

    def _get_transfer_method(self, host_version: str) -> TransferMethod:
        if (self.config.REMOTE_CLONE_ENABLED
                and compare_versions(host_version, REMOTE_CLONE_MIN_HOST_VERSION) >= 0):
            return TransferMethod.REMOTE_CLONE
        return TransferMethod.LOCAL_COPY

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_session(self, session: AgentlessSession):
        paths = self.paths(session.identity)
        info = SessionInfo(
            session_id=session.identity.to_name(),
            host=session.host,
            user=session.user,
            password=encrypt_password(session.password, self.config.SECRET_KEY),
            vm_ref=session.vm_ref,
            snapshot_ref=session.snapshot_ref,
            full_disk_backup=session.full_disk_backup,
            transfer_method=session.transfer_method,
            force_nbd=session.force_nbd,
        )
        self.store.write(paths.volume_metadata, session.volume_metadata)
        self.store.write(paths.guest_metadata, session.guest_metadata)
        self.store.write(paths.session_info, info.model_dump(mode="json", by_alias=True))

    def read_session_info(self, identity: SessionIdentity) -> Optional[SessionInfo]:
        document = self.store.read(self.paths(identity).session_info)
        if document is None:
            return None
        return SessionInfo.model_validate(document)

    def load_session(self, identity: SessionIdentity) -> AgentlessSession:
        """
        Load a persisted session and reconnect to its VM.

        Raises:
            SessionNotFoundError: If the session has no session info
        """
        info = self.read_session_info(identity)
        if info is None:
            raise SessionNotFoundError(f"Agentless session {identity} not found")

        paths = self.paths(identity)
        password = decrypt_password(info.password, self.config.SECRET_KEY)
        client = self.connections.get(info.host, info.user, password)

        return AgentlessSession(
            identity=identity,
            host=info.host,
            user=info.user,
            password=password,
            vm_ref=info.vm_ref,
            snapshot_ref=info.snapshot_ref,
            transfer_method=info.transfer_method,
            client=client,
            vm=client.retrieve_virtual_machine(info.vm_ref),
            full_disk_backup=info.full_disk_backup,
            force_nbd=info.force_nbd,
            volume_metadata=self.store.read(paths.volume_metadata, default={}),
            guest_metadata=self.store.read(paths.guest_metadata, default={}),
        )

    def get_session(self, identity: SessionIdentity) -> AgentlessSession:
        """Take the session lock and load the session."""
        self.acquire_session_lock(identity)
        return self.load_session(identity)

    def get_session_readonly(self, identity: SessionIdentity) -> AgentlessSession:
        """Load the session without taking its lock."""
        return self.load_session(identity)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_session_status(self, identity: SessionIdentity) -> Dict[str, Any]:
        """
        Status document reconciled with process liveness.

        A session that is neither READY nor CLEANED_UP while no initializing
        process is alive was killed, and is reported FAILED.
        """
        initializing = self.is_session_initializing(identity)
        document = self.status_service(identity).get() or {}

        mount_point = str(self.paths(identity).mount_point)
        document["vmdks_mounted"] = self.mount_manager.is_mounted(mount_point)

        current = document.get("status")
        if current == SessionStatus.READY.value and document["vmdks_mounted"]:
            document["vmdks"] = self.mount_manager.list_transport_methods(mount_point)

        if current not in (SessionStatus.READY.value, SessionStatus.CLEANED_UP.value) and not initializing:
            document["status"] = SessionStatus.FAILED.value

        return document

    def is_session_running(self, identity: SessionIdentity) -> bool:
        """True unless the session never started, failed or was cleaned up."""
        if not self.paths(identity).status.is_file():
            return False
        current = self.get_session_status(identity).get("status")
        return current not in TERMINAL_STATUSES

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_session_background(self, identity: SessionIdentity):
        command = proxy_command("cleanup", "--agentless-session", identity.to_name())
        paths = self.paths(identity)
        paths.root.mkdir(parents=True, exist_ok=True)
        self.launcher.launch(command, f"cleanup {identity}", output_path=paths.background_log)
        self._log("INFO", f"Session cleanup started in the background for {identity}")

    def cleanup_session(self, identity: SessionIdentity, on_pre_cleanup: bool = False):
        """
        Tear a session down: unmount, remove the snapshot, archive documents.

        Sub-step failures are logged and never abort the cleanup. The
        snapshot is kept when the unmount failed, since removing it under
        an inconsistent mount can corrupt the VM.
        """
        paths = self.paths(identity)
        status = self.status_service(identity)

        if self.kill_running_backup(identity):
            self._log("WARNING", "Killed a running backup")
        if not on_pre_cleanup and self.kill_initializing_session(identity):
            self._log("WARNING", "Killed an initializing session")

        lock = self.session_lock(identity)
        if not lock.held:
            try:
                lock.acquire_with_retry(self.config.CLEANUP_LOCK_ATTEMPTS, self.config.CLEANUP_LOCK_DELAY)
            except SessionBusyError as e:
                self._log("WARNING", f"Could not acquire session lock, cleaning up anyway: {e}")

        status.set_status(SessionStatus.CLEANING, "Umounting VDDK")
        try:
            info = self.read_session_info(identity)
        except Exception as e:
            self._log("WARNING", f"Unreadable session info, skipping snapshot removal: {e}")
            info = None

        remove_snapshot = True
        if info is None or info.transfer_method != TransferMethod.REMOTE_CLONE:
            try:
                self.mount_manager.unmount(str(paths.mount_point))
            except MountError as e:
                self._log("WARNING", f"Unmount failed: {e}")
                if not on_pre_cleanup:
                    remove_snapshot = False

        if info is None:
            status.set_status(SessionStatus.CLEANED_UP)
            return

        if remove_snapshot:
            status.set_status(SessionStatus.CLEANING, "Deleting snapshot")
            self._remove_session_snapshot(info)
        else:
            self._log("WARNING", f"Keeping snapshot {info.snapshot_ref}, mount state was inconsistent")

        self._archive_session_files(paths)
        status.set_status(SessionStatus.CLEANED_UP)

    def _remove_session_snapshot(self, info: SessionInfo):
        try:
            password = decrypt_password(info.password, self.config.SECRET_KEY)
            client = self.connections.get(info.host, info.user, password)
            vm = client.retrieve_virtual_machine(info.vm_ref)

            if self._proxy_holds_target_disks(client, vm):
                self._log("WARNING", "Proxy VM still has disks of the target VM attached, keeping snapshot")
                return

            @retry(stop=stop_after_attempt(3), wait=wait_fixed(5), reraise=True)
            def _remove():
                client.remove_snapshot(vm, info.snapshot_ref)

            _remove()
            self._log("INFO", f"Removed snapshot {info.snapshot_ref}")
        except Exception as e:
            self._log("ERROR", f"Failed to remove snapshot {info.snapshot_ref}: {e}")

    def _archive_session_files(self, paths: SessionPaths):
        """Move session documents and job statuses into the "old" directory."""
        paths.archive.mkdir(parents=True, exist_ok=True)
        candidates = [paths.guest_metadata, paths.volume_metadata, paths.session_info]
        candidates.extend(paths.root.glob("backup-*.status"))

        for path in candidates:
            if path.is_file():
                os.replace(path, paths.archive / path.name)
