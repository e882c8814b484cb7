"""ORM tables for migration records and logs."""

import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class MigrationRow(Base):
    __tablename__ = 'migrations'

    id = Column(String(36), primary_key=True)
    source_url = Column(Text, nullable=False)
    target_project_id = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default='registered', index=True)
    last_synced_revision = Column(Integer, nullable=True)
    layout_config = Column(JSON, nullable=False, default=dict)
    authors_mapping = Column(JSON, nullable=False, default=dict)
    # 'metadata' is reserved on declarative classes
    meta = Column('metadata', JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.datetime.now, index=True)
    updated_at = Column(
        DateTime, default=datetime.datetime.now, onupdate=datetime.datetime.now
    )


class MigrationLogRow(Base):
    __tablename__ = 'migration_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    migration_id = Column(
        String(36),
        ForeignKey('migrations.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    level = Column(String(10), nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=datetime.datetime.now)
