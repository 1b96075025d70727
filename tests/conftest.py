"""Global pytest configuration and fixtures."""

from typing import Any, Dict, List

import pytest

from agentless.core.config import Settings
from agentless.core.logging_handler import reset_logging
from agentless.services.proxy.hypervisor import ConnectionCache
from agentless.services.proxy.session import AgentlessSession, TransferMethod
from agentless.services.proxy.session_id import SessionIdentity
from tests.fakes import FakeHypervisorClient


@pytest.fixture(autouse=True)
def clean_logging():
    """Drop handlers attached by setup_logging so streams captured by one test do not leak into the next."""
    yield
    reset_logging()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        SESSION_BASE_PATH=str(tmp_path / "sessions"),
        SECRET_KEY="test-secret-key",
        SNAPSHOT_RETRY_DELAY=0,
        CLEANUP_LOCK_ATTEMPTS=1,
        CLEANUP_LOCK_DELAY=0,
        SESSION_RELEASE_TIMEOUT=1,
        BACKGROUND_TASK_START_TIMEOUT=1,
        VMWARE_TEMP_PATH=str(tmp_path / "vmware-root"),
        LOG_DIR=None,
    )


@pytest.fixture
def identity():
    return SessionIdentity("host-uuid-1", "vm-42", "asset1")


@pytest.fixture
def hypervisor():
    return FakeHypervisorClient()


@pytest.fixture
def connections(hypervisor):
    return ConnectionCache(lambda host, user, password: hypervisor, ttl=600)


@pytest.fixture
def make_session(identity, hypervisor):
    """Build an in-memory AgentlessSession over the fake hypervisor."""
    def _make(vmdks: List[Dict[str, Any]], full_disk: bool = False,
              transfer_method: TransferMethod = TransferMethod.LOCAL_COPY) -> AgentlessSession:
        return AgentlessSession(
            identity=identity,
            host="esx01",
            user="root",
            password="secret",
            vm_ref=identity.vm_ref,
            snapshot_ref="snapshot-1",
            transfer_method=transfer_method,
            client=hypervisor,
            vm=hypervisor.retrieve_virtual_machine("web01"),
            full_disk_backup=full_disk,
            volume_metadata={"vmdkInfo": vmdks},
        )
    return _make
