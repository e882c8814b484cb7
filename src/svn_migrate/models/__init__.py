"""Data models for migrations and jobs."""

from .migration import (
    AuthorIdentity,
    LayoutConfig,
    LayoutKind,
    MigrationRecord,
    MigrationStatus,
    ProgressInfo,
    parse_authors_mapping,
)
from .job import Job, JobParams, JobState, JobType, ResumeFrom, SvnCredentials

__all__ = [
    'AuthorIdentity',
    'LayoutConfig',
    'LayoutKind',
    'MigrationRecord',
    'MigrationStatus',
    'ProgressInfo',
    'parse_authors_mapping',
    'Job',
    'JobParams',
    'JobState',
    'JobType',
    'ResumeFrom',
    'SvnCredentials',
]
