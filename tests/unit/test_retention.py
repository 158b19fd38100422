"""
Unit tests for retention policy (keepsafe/backup/retention.py).

Tests keep-last-N pruning per plan over a storage backend.
"""

from unittest.mock import MagicMock

import pytest

from keepsafe.backup.retention import (
    apply_retention, artifact_prefix, filter_plan_artifacts
)
from keepsafe.errors import DeleteFailed, ListFailed, OperationCancelled, RetentionDeleteFailed


def _names(plan_id, count):
    return [f"{plan_id}_202401{day:02d}_020000.awdb" for day in range(1, count + 1)]


def _populate(storage_dir, names):
    for name in names:
        (storage_dir / name).write_bytes(b'x')


class TestFilterPlanArtifacts:
    """Test which stored names belong to a plan."""

    def test_prefix_and_timestamp(self):
        names = [
            'docs_20240101_020000.awdb',
            'DOCS_20240102_020000.awdb',
            'docs-old_20240101_020000.awdb',
            'docs_notes.txt',
            'docs_20240101_020000',
            'other_20240101_020000.awdb',
        ]

        assert filter_plan_artifacts(names, 'docs') == [
            'docs_20240101_020000.awdb',
            'DOCS_20240102_020000.awdb',
        ]

    def test_sanitized_prefix(self):
        """Test plan ids with invalid file name characters."""
        assert artifact_prefix('srv/db:main') == 'srv_db_main_'
        assert filter_plan_artifacts(['srv_db_main_20240101_020000.awdb'], 'srv/db:main')

    def test_prefix_is_not_a_pattern(self):
        """Test regex characters in the plan id are matched literally."""
        assert filter_plan_artifacts(['ab_20240101_020000.awdb'], 'a.') == []


class TestApplyRetention:
    """Test apply_retention."""

    def test_keeps_newest(self, local_storage, storage_dir):
        """Test only the newest keep_last artifacts survive."""
        names = _names('docs', 6)
        _populate(storage_dir, names)

        result = apply_retention(local_storage, 'docs', 3)

        assert result.kept == names[5:2:-1]
        assert sorted(result.deleted) == names[:3]
        assert result.failures == []
        assert local_storage.list_artifacts() == names[3:]

    def test_deletes_oldest_first_in_order(self):
        """Test deletions are issued newest to oldest beyond the kept set."""
        storage = MagicMock()
        storage.list_artifacts.return_value = _names('docs', 4)

        apply_retention(storage, 'docs', 1)

        deleted = [c[0][0] for c in storage.delete.call_args_list]
        assert deleted == [
            'docs_20240103_020000.awdb',
            'docs_20240102_020000.awdb',
            'docs_20240101_020000.awdb',
        ]

    def test_nothing_to_delete(self, local_storage, storage_dir):
        _populate(storage_dir, _names('docs', 2))

        result = apply_retention(local_storage, 'docs', 5)

        assert len(result.kept) == 2
        assert result.deleted == []

    @pytest.mark.parametrize('keep_last', [0, -3, None])
    def test_always_keeps_one(self, local_storage, storage_dir, keep_last):
        """Test a non-positive keep count still keeps the newest artifact."""
        names = _names('docs', 3)
        _populate(storage_dir, names)

        result = apply_retention(local_storage, 'docs', keep_last)

        assert result.kept == [names[-1]]
        assert local_storage.list_artifacts() == [names[-1]]

    def test_other_plans_untouched(self, local_storage, storage_dir):
        """Test artifacts of other plans are never counted or deleted."""
        _populate(storage_dir, _names('docs', 3) + _names('mail', 3))

        apply_retention(local_storage, 'docs', 1)

        assert local_storage.list_artifacts() == ['docs_20240103_020000.awdb'] + _names('mail', 3)

    def test_renamed_plan_orphans_old_artifacts(self, local_storage, storage_dir):
        """Test artifacts written under a previous plan id are left alone."""
        old = _names('documents', 3)
        _populate(storage_dir, old + _names('docs', 2))

        apply_retention(local_storage, 'docs', 1)

        remaining = local_storage.list_artifacts()
        assert all(name in remaining for name in old)
        assert 'docs_20240101_020000.awdb' not in remaining

    def test_failures_do_not_stop_others(self):
        """Test one failed deletion is recorded while the rest proceed."""
        storage = MagicMock()
        storage.list_artifacts.return_value = _names('docs', 4)

        def delete(name, cancellation_check=None):
            if name == 'docs_20240102_020000.awdb':
                raise DeleteFailed("permission denied")

        storage.delete.side_effect = delete

        result = apply_retention(storage, 'docs', 1)

        assert result.deleted == ['docs_20240103_020000.awdb', 'docs_20240101_020000.awdb']
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert isinstance(failure, RetentionDeleteFailed)
        assert failure.artifact_name == 'docs_20240102_020000.awdb'

    def test_cancellation_propagates(self):
        """Test cancellation stops retention instead of being recorded."""
        storage = MagicMock()
        storage.list_artifacts.return_value = _names('docs', 4)
        storage.delete.side_effect = OperationCancelled("cancelled")

        with pytest.raises(OperationCancelled):
            apply_retention(storage, 'docs', 1)

    def test_list_failure_propagates(self):
        storage = MagicMock()
        storage.list_artifacts.side_effect = ListFailed("unreachable")

        with pytest.raises(ListFailed):
            apply_retention(storage, 'docs', 1)
