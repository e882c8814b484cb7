"""Migration record models."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, validator

from ..exceptions import ValidationError

_IDENTITY = re.compile(r'^\s*(?P<name>[^<>]+?)\s*<(?P<email>[^<>@\s]+@[^<>\s]+)>\s*$')
_SVN_USERNAME = re.compile(r'^[^\s=<>]+$')


class MigrationStatus(str, Enum):
    """Lifecycle states of a migration record."""

    REGISTERED = 'registered'
    PENDING = 'pending'
    RUNNING = 'running'
    SYNCING = 'syncing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_active(self) -> bool:
        """True while a job holds the record."""
        return self in ACTIVE_STATUSES

    def can_transition(self, target: 'MigrationStatus') -> bool:
        """Check whether moving to ``target`` is allowed."""
        return target in TRANSITIONS[self]


ACTIVE_STATUSES: FrozenSet[MigrationStatus] = frozenset(
    {MigrationStatus.PENDING, MigrationStatus.RUNNING, MigrationStatus.SYNCING}
)

TRANSITIONS: Dict[MigrationStatus, FrozenSet[MigrationStatus]] = {
    MigrationStatus.REGISTERED: frozenset(
        {MigrationStatus.PENDING, MigrationStatus.RUNNING, MigrationStatus.CANCELLED}
    ),
    MigrationStatus.PENDING: frozenset(
        {MigrationStatus.RUNNING, MigrationStatus.CANCELLED, MigrationStatus.FAILED}
    ),
    MigrationStatus.RUNNING: frozenset(
        {
            MigrationStatus.COMPLETED,
            MigrationStatus.FAILED,
            MigrationStatus.CANCELLED,
        }
    ),
    MigrationStatus.SYNCING: frozenset(
        {
            MigrationStatus.COMPLETED,
            MigrationStatus.FAILED,
            MigrationStatus.CANCELLED,
        }
    ),
    MigrationStatus.COMPLETED: frozenset({MigrationStatus.SYNCING}),
    MigrationStatus.FAILED: frozenset(
        {MigrationStatus.PENDING, MigrationStatus.RUNNING}
    ),
    MigrationStatus.CANCELLED: frozenset(
        {MigrationStatus.PENDING, MigrationStatus.RUNNING}
    ),
}


class LayoutKind(str, Enum):
    """Source path conventions understood by git-svn."""

    STANDARD = 'standard'
    SINGLE_TRUNK = 'single_trunk'
    CUSTOM = 'custom'


class LayoutConfig(BaseModel):
    """Mapping of SVN paths to git branches and tags."""

    kind: LayoutKind = Field(default=LayoutKind.STANDARD, description='Layout kind')
    trunk: Optional[str] = Field(default=None, description='Trunk path')
    branches: Optional[str] = Field(default=None, description='Branches path')
    tags: Optional[str] = Field(default=None, description='Tags path')

    @validator('trunk', 'branches', 'tags')
    def validate_path(cls, v):
        """Normalise relative repository paths."""
        if v is None:
            return v
        v = v.strip().strip('/')
        if not v or '..' in v.split('/'):
            raise ValueError(f'Invalid layout path: {v!r}')
        return v

    @validator('tags', always=True)
    def validate_custom_trunk(cls, v, values):
        """A custom layout must at least name its trunk."""
        if values.get('kind') == LayoutKind.CUSTOM and not values.get('trunk'):
            raise ValueError('Custom layout requires a trunk path')
        return v

    @classmethod
    def parse(cls, data: Any) -> 'LayoutConfig':
        """Build a layout from user input, raising ``ValidationError``."""
        if data is None:
            return cls()
        if isinstance(data, LayoutConfig):
            return data
        if isinstance(data, str):
            data = {'kind': data}
        if not isinstance(data, dict):
            raise ValidationError(f'Layout must be a mapping, got {type(data).__name__}')
        data = dict(data)
        # Bare {trunk, branches, tags} as stored by older clients means custom
        if 'kind' not in data and any(data.get(k) for k in ('trunk', 'branches', 'tags')):
            data['kind'] = LayoutKind.CUSTOM
        try:
            return cls(**data)
        except ValueError as e:
            raise ValidationError(f'Invalid layout: {e}') from e

    @property
    def branches_path(self) -> Optional[str]:
        """Path listed for branches in previews."""
        if self.kind == LayoutKind.STANDARD:
            return self.branches or 'branches'
        if self.kind == LayoutKind.CUSTOM:
            return self.branches
        return None

    @property
    def tags_path(self) -> Optional[str]:
        """Path listed for tags in previews."""
        if self.kind == LayoutKind.STANDARD:
            return self.tags or 'tags'
        if self.kind == LayoutKind.CUSTOM:
            return self.tags
        return None

    @property
    def trunk_ref(self) -> str:
        """Name of the git-svn remote ref that tracks trunk."""
        if self.kind == LayoutKind.SINGLE_TRUNK:
            return 'git-svn'
        return 'trunk'

    def to_git_svn_args(self) -> List[str]:
        """Arguments for ``git svn init`` describing this layout."""
        if self.kind == LayoutKind.SINGLE_TRUNK:
            return []
        if self.kind == LayoutKind.STANDARD and not (
            self.trunk or self.branches or self.tags
        ):
            return ['--stdlayout']

        trunk = self.trunk or ('trunk' if self.kind == LayoutKind.STANDARD else None)
        args = ['--trunk', trunk]
        if self.branches_path:
            args.extend(['--branches', self.branches_path])
        if self.tags_path:
            args.extend(['--tags', self.tags_path])
        return args


class AuthorIdentity(BaseModel):
    """Destination commit identity."""

    name: str
    email: str

    @classmethod
    def parse(cls, value: str) -> 'AuthorIdentity':
        """Parse ``Name <email>``."""
        match = _IDENTITY.match(value or '')
        if not match:
            raise ValidationError(
                f'Invalid author identity {value!r}; expected "Name <email>"'
            )
        return cls(name=match.group('name'), email=match.group('email'))

    @classmethod
    def fallback(cls, username: str, domain: str) -> 'AuthorIdentity':
        """Synthetic identity for an unmapped SVN username."""
        return cls(name=username, email=f'{username}@{domain}')

    def __str__(self) -> str:
        return f'{self.name} <{self.email}>'


def parse_authors_mapping(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Validate and normalise an authors mapping.

    Returns:
        Mapping of SVN username to canonical ``Name <email>`` strings

    Raises:
        ValidationError: If a username or identity is malformed
    """
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Authors mapping must be a mapping of username to identity')

    mapping = {}
    for username, identity in data.items():
        username = str(username).strip()
        if not _SVN_USERNAME.match(username):
            raise ValidationError(f'Invalid SVN username in authors mapping: {username!r}')
        mapping[username] = str(AuthorIdentity.parse(str(identity)))
    return mapping


def resolve_author(
    username: str, mapping: Dict[str, str], fallback_domain: str
) -> AuthorIdentity:
    """Resolve a username through the mapping, falling back to a synthetic identity."""
    if username in mapping:
        return AuthorIdentity.parse(mapping[username])
    return AuthorIdentity.fallback(username, fallback_domain)


class ProgressInfo(BaseModel):
    """Replay progress of a running job."""

    current: int = Field(default=0, description='Revisions replayed in this run')
    total: Optional[int] = Field(default=None, description='Revisions expected')
    percentage: float = Field(default=0.0, description='Completion percentage')
    is_estimated: bool = Field(
        default=False, description='Percentage derived from elapsed time'
    )
    revision: Optional[int] = Field(default=None, description='Last revision seen')


class MigrationRecord(BaseModel):
    """Durable migration entity."""

    id: str = Field(..., description='Migration ID')
    source_url: str = Field(..., description='SVN repository URL')
    target_project_id: int = Field(..., description='Destination project ID')
    status: MigrationStatus = Field(
        default=MigrationStatus.REGISTERED, description='Lifecycle status'
    )
    layout: LayoutConfig = Field(
        default_factory=LayoutConfig, description='Branch/tag layout'
    )
    authors_mapping: Dict[str, str] = Field(
        default_factory=dict, description='SVN username to git identity'
    )
    last_synced_revision: Optional[int] = Field(
        default=None, description='Last revision fully replayed'
    )
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description='Display and bookkeeping data'
    )
    created_at: Optional[datetime] = Field(default=None, description='Creation time')
    updated_at: Optional[datetime] = Field(default=None, description='Last update')

    class Config:
        """Pydantic configuration."""

        json_encoders = {datetime: lambda v: v.isoformat() if v else None}

    @validator('source_url')
    def validate_source_url(cls, v):
        """Validate the SVN URL scheme."""
        if not v.startswith(('svn://', 'svn+ssh://', 'http://', 'https://', 'file://')):
            raise ValueError('SVN URL must use svn, svn+ssh, http(s) or file scheme')
        return v.rstrip('/')

    @property
    def project_name(self) -> str:
        return self.metadata.get('project_name') or self.source_url.rsplit('/', 1)[-1]

    @property
    def project_path(self) -> str:
        return self.metadata.get('project_path') or self.project_name

    @property
    def error(self) -> Optional[str]:
        return self.metadata.get('error')
