"""Tests for the fuse mount manager."""

import hashlib
import socket
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from agentless.services.proxy.mount import (
    SSL_THUMBPRINT_TIMEOUT,
    MountError,
    MountManager,
    select_library_version,
)

MOUNT_POINT = "/tmp/agentless/host_vm-42_asset1/vddk"


@pytest.fixture
def manager(tmp_path):
    return MountManager(unmount_timeout=0, vmware_temp_path=str(tmp_path / "vmware-root"))


def mount_state(manager, pid, in_mount_table):
    return (
        patch.object(manager, "get_helper_pid", return_value=pid),
        patch.object(MountManager, "is_in_mount_table", return_value=in_mount_table),
        patch.object(MountManager, "_run_unmount"),
    )


def test_clean_unmount(manager):
    get_pid, in_table, run_unmount = mount_state(manager, 4242, True)
    with get_pid, in_table, run_unmount as unmount_cmd, \
            patch("agentless.services.proxy.mount.is_process_running", return_value=False):
        manager.unmount(MOUNT_POINT)

    unmount_cmd.assert_called_once_with(["fusermount", "-u", MOUNT_POINT])


def test_helper_does_not_exit(manager):
    get_pid, in_table, run_unmount = mount_state(manager, 4242, True)
    with get_pid, in_table, run_unmount, \
            patch("agentless.services.proxy.mount.is_process_running", return_value=True):
        with pytest.raises(MountError, match="did not exit"):
            manager.unmount(MOUNT_POINT)


def test_mounted_without_helper_is_force_unmounted(manager):
    """A mount whose helper died is unmounted, but still reported as an error."""
    get_pid, in_table, run_unmount = mount_state(manager, None, True)
    with get_pid, in_table, run_unmount as unmount_cmd:
        with pytest.raises(MountError, match="process was not running"):
            manager.unmount(MOUNT_POINT)

    unmount_cmd.assert_called_once_with(["umount", MOUNT_POINT])


def test_helper_without_mount(manager):
    get_pid, in_table, run_unmount = mount_state(manager, 4242, False)
    with get_pid, in_table, run_unmount as unmount_cmd:
        with pytest.raises(MountError, match="not mounted"):
            manager.unmount(MOUNT_POINT)

    unmount_cmd.assert_not_called()


def test_nothing_to_unmount(manager):
    get_pid, in_table, run_unmount = mount_state(manager, None, False)
    with get_pid, in_table, run_unmount:
        with pytest.raises(MountError, match="unexpectedly clean"):
            manager.unmount(MOUNT_POINT)


def test_mount_passes_credentials_outside_argv(manager, tmp_path):
    mount_point = str(tmp_path / "vddk")

    with patch("agentless.services.proxy.mount.subprocess.run") as run, \
            patch.object(MountManager, "get_ssl_thumbprint", return_value="AA:BB"), \
            patch.object(manager, "get_helper_pid", return_value=4242):
        pid = manager.mount("esx01", "root", "s3cret", "vm-42", "snapshot-1",
                            ["[ds1] vm/vm.vmdk"], mount_point, "6.7.0", force_nbd=True)

    assert pid == 4242
    command = run.call_args[0][0]
    assert "s3cret" not in " ".join(command)
    assert run.call_args[1]["input"] == "s3cret"
    assert run.call_args[1]["env"]["ESX_USERNAME"] == "root"
    options = command[command.index("-o") + 1]
    assert "force_nbd=1" in options
    assert "sdk_ver=6.7" in options
    assert "ssl_thumb=AA:BB" in options
    assert command[-1] == mount_point


def test_mount_helper_failure(manager, tmp_path):
    error = subprocess.CalledProcessError(1, ["vddk-fuse"], stderr="connection refused\n")

    with patch("agentless.services.proxy.mount.subprocess.run", side_effect=error), \
            patch.object(MountManager, "get_ssl_thumbprint", return_value="AA:BB"):
        with pytest.raises(MountError, match="connection refused"):
            manager.mount("esx01", "root", "pw", "vm-42", "snapshot-1", [], str(tmp_path / "vddk"), "6.5")


def test_mount_helper_not_found_after_mount(manager, tmp_path):
    with patch("agentless.services.proxy.mount.subprocess.run"), \
            patch.object(MountManager, "get_ssl_thumbprint", return_value="AA:BB"), \
            patch.object(manager, "get_helper_pid", return_value=None):
        with pytest.raises(MountError, match="not found"):
            manager.mount("esx01", "root", "pw", "vm-42", "snapshot-1", [], str(tmp_path / "vddk"), "6.5")


def test_ensure_clean(manager, tmp_path):
    stale = tmp_path / "vmware-root" / "bios-uuid-1-vm-42"
    stale.mkdir(parents=True)

    with patch.object(manager, "get_helper_pid", return_value=4242), \
            patch("agentless.services.proxy.mount.force_kill") as force_kill:
        manager.ensure_clean(MOUNT_POINT, "vm-42", "bios-uuid-1")

    force_kill.assert_called_once_with(4242)
    assert not stale.exists()


def test_list_transport_methods_requires_mount(manager):
    with patch.object(manager, "get_helper_pid", return_value=None):
        with pytest.raises(MountError):
            manager.list_transport_methods(MOUNT_POINT)


def test_list_transport_methods(manager, tmp_path):
    (tmp_path / "disk-a.vmdk").touch()

    with patch.object(manager, "get_helper_pid", return_value=4242):
        methods = manager.list_transport_methods(str(tmp_path))

    assert methods == [{"diskPath": str(tmp_path / "disk-a.vmdk"), "transport": "unknown"}]


def test_helper_pid_pattern(manager):
    with patch("agentless.services.proxy.mount.find_pid_by_cmdline", return_value=77) as find:
        assert manager.get_helper_pid(MOUNT_POINT) == 77

    pattern = find.call_args[0][0]
    assert pattern.startswith("^vddk\\-mount") or pattern.startswith("^vddk-mount")
    assert pattern.endswith("vddk")


@pytest.mark.parametrize("version,expected", [("5.5.0", "6.0"), ("6.0.0", "6.7"), ("7.0.3", "6.7")])
def test_select_library_version(version, expected):
    assert select_library_version(version) == expected


def test_ssl_thumbprint_connects_with_timeout():
    connection = MagicMock()
    connection.__enter__.return_value = connection
    context = MagicMock()
    context.wrap_socket.return_value.__enter__.return_value.getpeercert.return_value = b"host certificate"

    with patch("agentless.services.proxy.mount.socket.create_connection", return_value=connection) as connect, \
            patch("agentless.services.proxy.mount.ssl.create_default_context", return_value=context):
        thumbprint = MountManager.get_ssl_thumbprint("esx01")

    connect.assert_called_once_with(("esx01", 443), timeout=SSL_THUMBPRINT_TIMEOUT)
    context.wrap_socket.assert_called_once_with(connection, server_hostname="esx01")
    digest = hashlib.sha1(b"host certificate").hexdigest().upper()
    assert thumbprint == ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def test_ssl_thumbprint_of_unreachable_host_times_out():
    """An unreachable host raises instead of blocking the mount forever."""
    with patch("agentless.services.proxy.mount.socket.create_connection",
               side_effect=socket.timeout("timed out")):
        with pytest.raises(socket.timeout):
            MountManager.get_ssl_thumbprint("esx01", timeout=0.1)
