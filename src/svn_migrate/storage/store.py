"""Migration record store.

The store is the source of truth for migration status and resume
checkpoints. It enforces the monotonic checkpoint rule but does
not enforce the single-active-job rule, which belongs to the scheduler.
"""

import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func

from ..exceptions import MigrationNotFoundError
from ..models.migration import LayoutConfig, MigrationRecord, MigrationStatus
from ..utils.logging import get_logger
from .database import get_session, init_database
from .models import MigrationLogRow, MigrationRow

logger = get_logger(__name__)


class MigrationStore:
    """SQLAlchemy-backed table of migration records.

    Every public method opens its own short session, so the store can be
    shared by the engine and CLI without holding connections open.

    Usage:
        store = MigrationStore('sqlite:///svn-migrate.db')
        record = store.create(MigrationRecord(id=..., source_url=..., ...))
        store.set_status(record.id, MigrationStatus.PENDING, job_id='abc')
    """

    def __init__(self, database_url: str):
        """Initialize the store and create tables if needed.

        Args:
            database_url: SQLAlchemy database URL (file path URLs for SQLite)
        """
        self.database_url = database_url
        self._lock = threading.RLock()
        init_database(database_url)
        logger.debug(f'Migration store ready at {database_url}')

    @staticmethod
    def _to_record(row: MigrationRow) -> MigrationRecord:
        return MigrationRecord(
            id=row.id,
            source_url=row.source_url,
            target_project_id=row.target_project_id,
            status=MigrationStatus(row.status),
            layout=LayoutConfig.parse(row.layout_config or None),
            authors_mapping=dict(row.authors_mapping or {}),
            last_synced_revision=row.last_synced_revision,
            metadata=dict(row.meta or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _get_row(self, session, migration_id: str) -> MigrationRow:
        row = session.get(MigrationRow, migration_id)
        if row is None:
            raise MigrationNotFoundError(migration_id)
        return row

    def create(self, record: MigrationRecord) -> MigrationRecord:
        """Persist a new record."""
        with self._lock, get_session(self.database_url) as session:
            now = datetime.now()
            row = MigrationRow(
                id=record.id,
                source_url=record.source_url,
                target_project_id=record.target_project_id,
                status=record.status.value,
                last_synced_revision=record.last_synced_revision,
                layout_config=record.layout.dict(),
                authors_mapping=dict(record.authors_mapping),
                meta=dict(record.metadata),
                created_at=record.created_at or now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            logger.info(f'Created migration record {record.id} ({record.source_url})')
            return self._to_record(row)

    def get(self, migration_id: str) -> Optional[MigrationRecord]:
        """Fetch a record or None."""
        with get_session(self.database_url) as session:
            row = session.get(MigrationRow, migration_id)
            return self._to_record(row) if row is not None else None

    def require(self, migration_id: str) -> MigrationRecord:
        """Fetch a record, raising ``MigrationNotFoundError`` if absent."""
        record = self.get(migration_id)
        if record is None:
            raise MigrationNotFoundError(migration_id)
        return record

    def list(
        self, statuses: Optional[Iterable[MigrationStatus]] = None
    ) -> List[MigrationRecord]:
        """List records, newest first, optionally filtered by status."""
        with get_session(self.database_url) as session:
            query = session.query(MigrationRow)
            if statuses is not None:
                query = query.filter(
                    MigrationRow.status.in_([MigrationStatus(s).value for s in statuses])
                )
            rows = query.order_by(MigrationRow.created_at.desc()).all()
            return [self._to_record(row) for row in rows]

    def update(
        self,
        migration_id: str,
        status: Optional[MigrationStatus] = None,
        metadata: Optional[Dict[str, Any]] = None,
        replace_metadata: bool = False,
    ) -> MigrationRecord:
        """Update status and/or metadata.

        Args:
            migration_id: Record ID
            status: New status, if changing
            metadata: Keys merged into the stored metadata (None values delete keys)
            replace_metadata: Replace the stored metadata instead of merging

        Returns:
            Updated record
        """
        with self._lock, get_session(self.database_url) as session:
            row = self._get_row(session, migration_id)
            if status is not None:
                row.status = MigrationStatus(status).value
            if metadata is not None:
                merged = {} if replace_metadata else dict(row.meta or {})
                for key, value in metadata.items():
                    if value is None:
                        merged.pop(key, None)
                    else:
                        merged[key] = value
                row.meta = merged
            row.updated_at = datetime.now()
            session.flush()
            return self._to_record(row)

    def set_status(
        self, migration_id: str, status: MigrationStatus, **metadata: Any
    ) -> MigrationRecord:
        """Shorthand for updating status with merged metadata keys."""
        return self.update(migration_id, status=status, metadata=metadata or None)

    def advance_checkpoint(self, migration_id: str, revision: Optional[int]) -> Optional[int]:
        """Move ``last_synced_revision`` forward.

        Lower or equal revisions are ignored so the checkpoint never moves
        backwards.

        Returns:
            The checkpoint after the call
        """
        with self._lock, get_session(self.database_url) as session:
            row = self._get_row(session, migration_id)
            current = row.last_synced_revision
            if revision is None or (current is not None and revision <= current):
                return current
            row.last_synced_revision = revision
            row.updated_at = datetime.now()
            logger.debug(
                f'Checkpoint for {migration_id} advanced from {current} to {revision}'
            )
            return revision

    def delete(self, migration_id: str) -> bool:
        """Delete a record and its logs."""
        with self._lock, get_session(self.database_url) as session:
            session.query(MigrationLogRow).filter_by(migration_id=migration_id).delete()
            deleted = session.query(MigrationRow).filter_by(id=migration_id).delete()
            return deleted > 0

    def status_counts(self) -> Dict[str, int]:
        """Number of records per status (every status present, zero if none)."""
        counts = {status.value: 0 for status in MigrationStatus}
        with get_session(self.database_url) as session:
            rows = (
                session.query(MigrationRow.status, func.count(MigrationRow.id))
                .group_by(MigrationRow.status)
                .all()
            )
        for status, count in rows:
            counts[status] = count
        return counts

    def add_log(self, migration_id: str, level: str, message: str) -> None:
        """Append a log line for a migration.

        Lines for records deleted while their process was still draining
        output are dropped.
        """
        with get_session(self.database_url) as session:
            if session.get(MigrationRow, migration_id) is None:
                return
            session.add(
                MigrationLogRow(
                    migration_id=migration_id, level=level, message=message
                )
            )

    def get_logs(self, migration_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent log lines, newest first."""
        with get_session(self.database_url) as session:
            rows = (
                session.query(MigrationLogRow)
                .filter_by(migration_id=migration_id)
                .order_by(MigrationLogRow.id.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    'level': row.level,
                    'message': row.message,
                    'timestamp': row.timestamp,
                }
                for row in rows
            ]
