"""Tests for the session status document."""

from agentless.services.proxy.session_status import SessionStatus, SessionStatusService


def test_never_started(tmp_path):
    service = SessionStatusService(tmp_path / "session" / "sessionStatus")
    assert service.get() is None
    assert service.get_status() is None


def test_state_transitions(tmp_path):
    service = SessionStatusService(tmp_path / "sessionStatus")
    service.initialize()
    assert service.get() == {
        "status": "starting",
        "detail": "",
        "error": "",
        "hostVersion": None,
        "bypassingManagementServer": False,
    }

    service.set_status(SessionStatus.PRE_CLEANING, "Ensure CBT is enabled")
    service.set_host_version("6.7.0")
    service.set_bypassing_management_server(True)

    document = service.get()
    assert document["status"] == "pre_cleaning"
    assert document["detail"] == "Ensure CBT is enabled"
    assert document["hostVersion"] == "6.7.0"
    assert document["bypassingManagementServer"] is True


def test_error_marks_failed(tmp_path):
    service = SessionStatusService(tmp_path / "sessionStatus")
    service.initialize()

    service.set_error("Mount helper failed with code 1")

    assert service.get_status() == SessionStatus.FAILED
    assert service.get()["error"] == "Mount helper failed with code 1"


def test_initialize_clears_previous_error(tmp_path):
    service = SessionStatusService(tmp_path / "sessionStatus")
    service.set_error("old failure")

    service.initialize()

    assert service.get_status() == SessionStatus.STARTING
    assert service.get()["error"] == ""
