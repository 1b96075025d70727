"""Tests for the hypervisor client base class and connection cache."""

from unittest.mock import MagicMock

import pytest

from agentless.services.proxy.hypervisor import ConnectionCache, SnapshotInfo, compare_versions
from tests.fakes import FakeHypervisorClient

NOW = 2_000_000_000


@pytest.fixture
def client():
    client = FakeHypervisorClient()
    client.snapshots = [
        SnapshotInfo("snapshot-1", "Before upgrade", NOW - 90000),
        SnapshotInfo("snapshot-2", f"vSiris Backup {NOW - 10000}", NOW - 10000),
        SnapshotInfo("snapshot-3", f"vSiris Backup {NOW - 7200}", NOW - 7200),
        SnapshotInfo("snapshot-4", f"vSiris Backup {NOW - 60}", NOW - 60),
        SnapshotInfo("snapshot-5", "vSiris Backup manual", NOW - 90000),
    ]
    return client


def test_remove_orphaned_snapshots(client):
    """Only old backup snapshots are removed, newest first."""
    remaining = client.remove_orphaned_snapshots(vm={}, max_age=3600, now=NOW)

    assert client.removed_snapshots == ["snapshot-3", "snapshot-2"]
    assert remaining == 1


def test_failed_orphan_removal_counts_as_remaining(client):
    client.remove_snapshot = MagicMock(side_effect=RuntimeError("task failed"))

    assert client.remove_orphaned_snapshots(vm={}, max_age=3600, now=NOW) == 3


def test_connection_cache_reuses_clients():
    factory = MagicMock(side_effect=lambda host, user, password: FakeHypervisorClient())
    cache = ConnectionCache(factory, ttl=600)

    first = cache.get("esx01", "root", "pw")
    assert cache.get("esx01", "root", "pw") is first
    assert cache.get("esx01", "root", "other") is not first
    assert factory.call_count == 2
    assert len(cache) == 2


def test_connection_cache_expiry():
    factory = MagicMock(side_effect=lambda host, user, password: FakeHypervisorClient())
    cache = ConnectionCache(factory, ttl=0)

    first = cache.get("esx01", "root", "pw")
    assert cache.get("esx01", "root", "pw") is not first
    assert len(cache) == 0


def test_connection_cache_invalidate():
    cache = ConnectionCache(lambda host, user, password: FakeHypervisorClient())
    first = cache.get("esx01", "root", "pw")

    cache.invalidate("esx01", "root", "pw")
    assert cache.get("esx01", "root", "pw") is not first

    cache.clear()
    assert len(cache) == 0


@pytest.mark.parametrize("a,b,expected", [
    ("6.7.0", "6.7", 0),
    ("6.5.0", "6.7", -1),
    ("7.0.3", "6.7", 1),
    ("6.7.0 build-8169922", "6.7.0", 1),
    ("10.0", "9.9", 1),
])
def test_compare_versions(a, b, expected):
    assert compare_versions(a, b) == expected
