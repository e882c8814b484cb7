"""Tests for the migration record store."""

import uuid

import pytest

from svn_migrate.exceptions import MigrationNotFoundError
from svn_migrate.models.migration import LayoutConfig, MigrationRecord, MigrationStatus
from svn_migrate.storage.store import MigrationStore


def _record(**kwargs):
    data = {
        'id': str(uuid.uuid4()),
        'source_url': 'https://svn.example.com/repos/app',
        'target_project_id': 42,
    }
    data.update(kwargs)
    return MigrationRecord(**data)


class TestMigrationStore:
    """Test record persistence."""

    @pytest.fixture(autouse=True)
    def _store(self, tmp_path):
        """Fresh store in a temporary SQLite file."""
        self.store = MigrationStore(f'sqlite:///{tmp_path / "store.db"}')

    def test_create_and_get(self):
        """Test a record round-trips with its layout and mapping."""
        record = _record(
            layout=LayoutConfig.parse({'kind': 'custom', 'trunk': 'main'}),
            authors_mapping={'alice': 'Alice <alice@example.com>'},
            metadata={'project_name': 'app'},
        )

        created = self.store.create(record)
        loaded = self.store.get(record.id)

        assert created.created_at is not None
        assert loaded.status == MigrationStatus.REGISTERED
        assert loaded.layout.trunk == 'main'
        assert loaded.authors_mapping == {'alice': 'Alice <alice@example.com>'}
        assert loaded.project_name == 'app'
        assert loaded.last_synced_revision is None

    def test_get_missing(self):
        """Test missing records."""
        assert self.store.get('nope') is None
        with pytest.raises(MigrationNotFoundError):
            self.store.require('nope')

    def test_list_filters_by_status(self):
        """Test status filtering."""
        first = self.store.create(_record())
        second = self.store.create(_record())
        self.store.set_status(second.id, MigrationStatus.FAILED, error='boom')

        failed = self.store.list([MigrationStatus.FAILED])

        assert [r.id for r in failed] == [second.id]
        assert {r.id for r in self.store.list()} == {first.id, second.id}

    def test_update_merges_metadata(self):
        """Test metadata keys merge and None deletes."""
        record = self.store.create(_record(metadata={'project_name': 'app', 'pid': 10}))

        updated = self.store.update(
            record.id, status=MigrationStatus.RUNNING, metadata={'pid': None, 'job_id': 'j1'}
        )

        assert updated.status == MigrationStatus.RUNNING
        assert updated.metadata == {'project_name': 'app', 'job_id': 'j1'}

    def test_checkpoint_is_monotonic(self):
        """Test the checkpoint never moves backwards."""
        record = self.store.create(_record())

        assert self.store.advance_checkpoint(record.id, 10) == 10
        assert self.store.advance_checkpoint(record.id, 5) == 10
        assert self.store.advance_checkpoint(record.id, None) == 10
        assert self.store.advance_checkpoint(record.id, 12) == 12
        assert self.store.require(record.id).last_synced_revision == 12

    def test_delete_removes_logs(self):
        """Test deleting a record and its logs."""
        record = self.store.create(_record())
        self.store.add_log(record.id, 'info', 'hello')

        assert self.store.delete(record.id) is True
        assert self.store.delete(record.id) is False
        assert self.store.get_logs(record.id) == []

    def test_logs_newest_first(self):
        """Test log ordering and limit."""
        record = self.store.create(_record())
        for i in range(5):
            self.store.add_log(record.id, 'info', f'line {i}')

        logs = self.store.get_logs(record.id, limit=2)

        assert [entry['message'] for entry in logs] == ['line 4', 'line 3']
        assert logs[0]['timestamp'] is not None

    def test_logs_for_deleted_record_dropped(self):
        """Test late log lines of a deleted record are ignored."""
        self.store.add_log('gone', 'info', 'late line')

        assert self.store.get_logs('gone') == []

    def test_status_counts(self):
        """Test every status is counted."""
        self.store.create(_record())
        record = self.store.create(_record())
        self.store.set_status(record.id, MigrationStatus.COMPLETED)

        counts = self.store.status_counts()

        assert counts['registered'] == 1
        assert counts['completed'] == 1
        assert counts['failed'] == 0
        assert set(counts) == {status.value for status in MigrationStatus}
