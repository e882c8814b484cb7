"""Scheduled job models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, SecretStr

from .migration import LayoutConfig


class JobType(str, Enum):
    """Queue a job belongs to."""

    MIGRATION = 'migration'
    SYNC = 'sync'


class JobState(str, Enum):
    """Queue bookkeeping state of a job."""

    WAITING = 'waiting'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class ResumeFrom(str, Enum):
    """Where a resumed migration restarts."""

    BEGINNING = 'beginning'
    LAST_REVISION = 'lastRevision'


class SvnCredentials(BaseModel):
    """Source repository credentials."""

    username: str = Field(..., description='SVN username')
    password: SecretStr = Field(..., description='SVN password')

    def to_args(self) -> list:
        """Non-interactive svn authentication arguments."""
        return [
            '--username',
            self.username,
            '--password',
            self.password.get_secret_value(),
            '--no-auth-cache',
            '--non-interactive',
        ]


class JobParams(BaseModel):
    """Resolved parameters handed to the process runner."""

    source_url: str = Field(..., description='SVN repository URL')
    target_project_id: int = Field(..., description='Destination project ID')
    project_path: str = Field(..., description='Working copy directory name')
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    authors_mapping: Dict[str, str] = Field(default_factory=dict)
    credentials: Optional[SvnCredentials] = Field(default=None)

    # Type-specific fields
    checkpoint: Optional[int] = Field(
        default=None, description='Revision the run continues after'
    )
    resume_from: Optional[ResumeFrom] = Field(default=None)
    expected_head: Optional[int] = Field(
        default=None, description='Head revision reported by the prober'
    )

    @property
    def is_incremental(self) -> bool:
        """True when the run continues an existing working copy."""
        return self.checkpoint is not None


class Job(BaseModel):
    """One scheduled execution attempt for a migration record."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    type: JobType = Field(..., description='Queue / job class')
    record_id: str = Field(..., description='Migration record ID')
    params: JobParams = Field(..., description='Resolved run parameters')
    state: JobState = Field(default=JobState.WAITING)
    cancel_requested: bool = Field(default=False)
    error: Optional[str] = Field(default=None)

    enqueued_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)

    @property
    def is_finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)
