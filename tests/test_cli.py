"""Tests for the proxy command line."""

import json
from unittest.mock import MagicMock, patch

import pytest

from agentless import cli
from agentless.services.proxy.session_id import SessionIdentity

SESSION = "host-uuid-1_vm-42_asset1"


@pytest.fixture(autouse=True)
def no_file_logging(monkeypatch):
    monkeypatch.setattr(cli.settings, "LOG_DIR", None)


@pytest.fixture
def services():
    lifecycle, orchestrator = MagicMock(), MagicMock()
    with patch.object(cli, "build_services", return_value=(lifecycle, orchestrator)):
        yield lifecycle, orchestrator


def test_backup_arguments():
    args = cli.build_parser().parse_args([
        "backup", "--agentless-session", SESSION, "--job-id", "backup-1",
        "--volume", "vol-a", "--destination-file", "/b/a.img", "--change-id-file", "/b/a.cid",
        "--volume", "vol-b", "--destination-file", "/b/b.img", "--change-id-file", "/b/b.cid",
        "--full",
    ])

    assert cli._volume_arguments(args) == (
        ["vol-a", "vol-b"], ["/b/a.img", "/b/b.img"], ["/b/a.cid", "/b/b.cid"]
    )
    assert args.full is True
    assert args.diff_merge is False


def test_volume_arguments_must_pair_up():
    args = cli.build_parser().parse_args([
        "start-backup", "--agentless-session", SESSION,
        "--volume", "vol-a", "--destination-file", "/b/a.img",
    ])
    with pytest.raises(ValueError):
        cli._volume_arguments(args)


def test_load_factory():
    factory = cli.load_factory("tests.fakes:FakeHypervisorClient", "HYPERVISOR_CLIENT_FACTORY")
    assert factory.__name__ == "FakeHypervisorClient"

    assert cli.load_factory(None, "GUEST_INTROSPECTION_FACTORY", required=False) is None
    with pytest.raises(ValueError):
        cli.load_factory(None, "HYPERVISOR_CLIENT_FACTORY")
    with pytest.raises(ValueError):
        cli.load_factory("tests.fakes", "HYPERVISOR_CLIENT_FACTORY")


def test_backup_status_prints_json(services, capsys):
    lifecycle, orchestrator = services
    orchestrator.get_backup_status.return_value = {"status": "active"}

    assert cli.main(["backup-status", "--agentless-session", SESSION, "--job-id", "backup-1"]) == 0

    assert json.loads(capsys.readouterr().out) == {"status": "active"}
    orchestrator.get_backup_status.assert_called_once_with(SessionIdentity.from_name(SESSION), "backup-1")
    lifecycle.release_all.assert_called_once()


def test_start_backup_prints_job_id(services, capsys):
    _, orchestrator = services
    orchestrator.take_backup_background.return_value = "backup-123"

    code = cli.main([
        "start-backup", "--agentless-session", SESSION,
        "--volume", "vol-a", "--destination-file", "/b/a.img", "--change-id-file", "/b/a.cid",
        "--diff-merge",
    ])

    assert code == 0
    assert capsys.readouterr().out.strip() == "backup-123"
    assert orchestrator.take_backup_background.call_args[1] == {"force_diffmerge": True, "force_full": False}


def test_start_session_reads_password_file(services, tmp_path, capsys):
    lifecycle, _ = services
    lifecycle.create_session_background.return_value = SessionIdentity.from_name(SESSION)
    password_file = tmp_path / "esx.pass"
    password_file.write_text("s3cret\n")

    code = cli.main([
        "start-session", "--host", "esx01", "--user", "root", "--password-file", str(password_file),
        "--vm-name", "web01", "--asset-key", "asset1", "--full-disk",
    ])

    assert code == 0
    assert capsys.readouterr().out.strip() == SESSION
    lifecycle.create_session_background.assert_called_once_with(
        "esx01", "root", "s3cret", "web01", "asset1", force_nbd=False, full_disk_backup=True
    )


def test_cancel_backup_releases_lock(services):
    _, orchestrator = services
    lock = MagicMock()
    orchestrator.cancel_backup.return_value = lock

    assert cli.main(["cancel-backup", "--agentless-session", SESSION, "--job-id", "backup-1"]) == 0
    lock.release.assert_called_once()


def test_failure_exit_code(services, capsys):
    lifecycle, _ = services
    lifecycle.cleanup_session.side_effect = RuntimeError("boom")

    assert cli.main(["cleanup", "--agentless-session", SESSION]) == 1
    assert "boom" in capsys.readouterr().err


def test_missing_hypervisor_factory(monkeypatch):
    monkeypatch.setattr(cli.settings, "HYPERVISOR_CLIENT_FACTORY", None)

    assert cli.main(["session-status", "--agentless-session", SESSION]) == 1


def test_invalid_session_id(services):
    assert cli.main(["session-status", "--agentless-session", "not-a-session"]) == 1
