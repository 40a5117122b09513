"""
Unit tests for retention policy management (vpsbackup/backup/retention.py).

Tests newest-N selection, companion removal and delete failure handling.
"""

import pytest

from vpsbackup.backup.retention import RetentionManager, select_prune_candidates
from vpsbackup.errors import PruneWarning, StorageError


def snapshot(day, host='host1'):
    return f"backup-{host}-202501{day:02d}-120000.tar.gz.enc"


@pytest.fixture
def populated_storage(fake_storage):
    """Four snapshots of host1 with companions, plus one of another host."""
    for day in (1, 2, 3, 4):
        fake_storage.put(snapshot(day))
        fake_storage.put(snapshot(day) + '.sha256', b'0' * 64)
    fake_storage.put(snapshot(1, host='host10'))
    return fake_storage


class TestSelectPruneCandidates:
    """Test the pure selection function."""

    def test_keep_newest(self):
        names = [snapshot(1), snapshot(3), snapshot(2), snapshot(4)]

        assert select_prune_candidates(names, 2) == [snapshot(2), snapshot(1)]

    def test_fewer_than_keep(self):
        assert select_prune_candidates([snapshot(1)], 2) == []

    @pytest.mark.parametrize("keep", [0, -1])
    def test_non_positive_keep_disables_pruning(self, keep):
        assert select_prune_candidates([snapshot(1), snapshot(2)], keep) == []

    def test_protected_name_never_selected(self):
        """Test the artifact just uploaded survives even if it sorts oldest."""
        names = [snapshot(1), snapshot(2), snapshot(3)]

        assert select_prune_candidates(names, 1, protect=snapshot(1)) == [snapshot(2)]

    def test_duplicates_ignored(self):
        assert select_prune_candidates([snapshot(1), snapshot(1), snapshot(2)], 1) == [snapshot(1)]


class TestRetentionManager:
    """Test RetentionManager against an in-memory store."""

    def test_list_snapshots_newest_first_host_only(self, populated_storage):
        manager = RetentionManager(populated_storage, 'host1', keep=2)

        names = [obj.name for obj in manager.list_snapshots()]

        assert names == [snapshot(4), snapshot(3), snapshot(2), snapshot(1)]

    def test_enforce_keeps_newest_n(self, populated_storage):
        manager = RetentionManager(populated_storage, 'host1', keep=2)

        summary = manager.enforce()

        assert summary['deleted'] == [snapshot(2), snapshot(1)]
        assert summary['failed'] == []
        assert summary['remaining'] == 2
        assert snapshot(4) in populated_storage.objects
        assert snapshot(3) in populated_storage.objects

    def test_enforce_deletes_companions(self, populated_storage):
        RetentionManager(populated_storage, 'host1', keep=2).enforce()

        assert snapshot(1) + '.sha256' not in populated_storage.objects
        assert snapshot(2) + '.sha256' not in populated_storage.objects
        assert snapshot(3) + '.sha256' in populated_storage.objects

    def test_enforce_leaves_other_hosts(self, populated_storage):
        RetentionManager(populated_storage, 'host1', keep=1).enforce()

        assert snapshot(1, host='host10') in populated_storage.objects

    def test_enforce_zero_keeps_everything(self, populated_storage):
        summary = RetentionManager(populated_storage, 'host1', keep=0).enforce()

        assert summary['deleted'] == []
        assert summary['remaining'] == 4
        assert populated_storage.deleted == []

    def test_enforce_with_protect(self, populated_storage):
        summary = RetentionManager(populated_storage, 'host1', keep=1).enforce(protect=snapshot(2))

        assert snapshot(2) not in summary['deleted']
        assert snapshot(2) in populated_storage.objects

    def test_delete_failure_warns_and_continues(self, populated_storage):
        populated_storage.fail_delete = {snapshot(2)}
        manager = RetentionManager(populated_storage, 'host1', keep=2)

        summary = manager.enforce()

        assert summary['failed'] == [snapshot(2)]
        assert len(summary['warnings']) == 1
        assert isinstance(summary['warnings'][0], PruneWarning)
        assert 'Failed to delete old backup' in str(summary['warnings'][0])
        assert summary['deleted'] == [snapshot(1)]
        assert summary['remaining'] == 3

    def test_listing_failure_raises(self, fake_storage, monkeypatch):
        def fail(prefix=''):
            raise StorageError("listing refused")
        monkeypatch.setattr(fake_storage, 'list_objects', fail)

        with pytest.raises(StorageError):
            RetentionManager(fake_storage, 'host1', keep=2).enforce()

    def test_count_snapshots(self, populated_storage):
        assert RetentionManager(populated_storage, 'host1', keep=2).count_snapshots() == 4

    def test_count_snapshots_listing_failure(self, fake_storage, monkeypatch):
        def fail(prefix=''):
            raise StorageError("listing refused")
        monkeypatch.setattr(fake_storage, 'list_objects', fail)

        assert RetentionManager(fake_storage, 'host1', keep=2).count_snapshots() is None
