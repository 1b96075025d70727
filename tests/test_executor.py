"""Tests for backup job execution."""

import json
from unittest.mock import MagicMock, patch

import pytest

from agentless.services.proxy.executor import BackupJobExecutor, parse_progress_line
from agentless.services.proxy.planner import BackupJob, BackupJobError, BackupType, ChangedArea
from agentless.services.proxy.session import TransferMethod
from tests.fakes import make_vmdk

PROGRESS = json.dumps({
    "processed_bytes": 4096,
    "elapsed_time_ms": 1500,
    "bytes_per_second": 2730,
    "written_bytes": 2048,
    "skipped_bytes": 2048,
})


def make_job(areas=None, diff_merge=False):
    return BackupJob(
        source_path="/tmp/agentless/vddk/disk-a.vmdk",
        destination_path="/backups/a.img",
        old_token="52 aa/1",
        new_token="52 aa/2",
        token_file="/backups/a.cid",
        volume_id="disk-a",
        backup_type=BackupType.INCREMENTAL,
        diff_merge=diff_merge,
        changed_areas=[ChangedArea(0, 0, 4096)] if areas is None else areas,
    )


def fake_process(stdout_lines, exit_code=0):
    process = MagicMock()
    process.stdout = iter(stdout_lines)
    process.stderr = iter(["vddk: opened disk\n"])
    process.wait.return_value = exit_code
    return process


@pytest.fixture
def token_store():
    return MagicMock()


@pytest.fixture
def executor(token_store, test_settings):
    return BackupJobExecutor(token_store, test_settings)


class TestParseProgressLine:
    def test_progress_line(self):
        assert parse_progress_line(PROGRESS + "\n") == {
            "processed_bytes": 4096,
            "elapsed_time_ms": 1500,
            "bytes_per_second": 2730,
            "written_bytes": 2048,
            "skipped_bytes": 2048,
        }

    def test_missing_optional_fields(self):
        assert parse_progress_line('{"processed_bytes": 10}')["written_bytes"] == 0

    @pytest.mark.parametrize("line", ["", "   ", "starting copy", "[1, 2]", '{"status": "ok"}'])
    def test_non_progress_output(self, line):
        assert parse_progress_line(line) is None


def test_local_copy(executor, token_store, make_session):
    session = make_session([make_vmdk("disk-a", 2000)])
    progress = []

    with patch("agentless.services.proxy.executor.subprocess.Popen") as popen:
        popen.return_value = fake_process([PROGRESS + "\n", "noise\n"])
        executor.execute(make_job(diff_merge=True), session, lambda *args: progress.append(args))

    command = popen.call_args[0][0]
    assert command[0] == executor.config.LOCAL_COPY_BINARY
    assert "-d" in command
    assert command[-2:] == ["/tmp/agentless/vddk/disk-a.vmdk", "/backups/a.img"]

    payload = json.loads(popen.return_value.stdin.write.call_args[0][0])
    assert payload == {"extents": [{"source_offset": 0, "destination_offset": 0, "length": 4096}]}

    assert progress == [(4096, 2048, 2048, 1500, 2730)]
    token_store.write.assert_called_once_with("/backups/a.cid", "52 aa/2")


def test_remote_clone(executor, token_store, make_session):
    session = make_session([make_vmdk("disk-a", 2000)], transfer_method=TransferMethod.REMOTE_CLONE)

    with patch("agentless.services.proxy.executor.subprocess.Popen") as popen:
        popen.return_value = fake_process([])
        executor.execute(make_job(), session)

    assert popen.call_args[0][0] == [executor.config.REMOTE_CLONE_BINARY]
    env = popen.call_args[1]["env"]
    assert env["LD_LIBRARY_PATH"] == executor.remote_clone_library_path
    assert executor.remote_clone_library_path.endswith("6.7/lib64")

    payload = json.loads(popen.return_value.stdin.write.call_args[0][0])
    assert payload["server_name"] == "esx01"
    assert payload["snapshot_id"] == "snapshot-1"
    assert payload["vm_id"] == "vm-42"
    assert payload["diff_merge"] is False
    token_store.write.assert_called_once()


def test_helper_failure_keeps_old_token(executor, token_store, make_session):
    session = make_session([make_vmdk("disk-a", 2000)])

    with patch("agentless.services.proxy.executor.subprocess.Popen") as popen:
        popen.return_value = fake_process([], exit_code=3)
        with pytest.raises(BackupJobError, match="Error calling mercuryftp: 3"):
            executor.execute(make_job(), session)

    token_store.write.assert_not_called()


def test_remote_clone_failure_message(executor, make_session):
    session = make_session([make_vmdk("disk-a", 2000)], transfer_method=TransferMethod.REMOTE_CLONE)

    with patch("agentless.services.proxy.executor.subprocess.Popen") as popen:
        popen.return_value = fake_process([], exit_code=2)
        with pytest.raises(BackupJobError, match="Error calling hyper-shuttle: 2"):
            executor.execute(make_job(), session)


def test_job_without_areas_is_a_no_op(executor, token_store, make_session):
    session = make_session([make_vmdk("disk-a", 2000)])

    with patch("agentless.services.proxy.executor.subprocess.Popen") as popen:
        executor.execute(make_job(areas=[]), session)

    popen.assert_not_called()
    token_store.write.assert_not_called()
