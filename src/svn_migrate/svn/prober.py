"""Source repository connection checks and dry-run previews."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from loguru import logger

from ..config.config import RunnerConfig
from ..exceptions import NotFoundError
from ..models.job import SvnCredentials
from ..models.migration import LayoutConfig, LayoutKind
from .commands import classify_svn_error, run_command

_LOG_ENTRY = re.compile(r'^r(\d+)\s*\|\s*([^|]+?)\s*\|')


@dataclass
class ConnectionResult:
    """Result of a source connection test."""

    reachable: bool
    root_entries: List[str] = field(default_factory=list)
    info: Dict[str, str] = field(default_factory=dict)

    @property
    def head_revision(self) -> Optional[int]:
        value = self.info.get('Revision')
        return int(value) if value and value.isdigit() else None


@dataclass
class MigrationPreview:
    """Dry-run plan for a migration."""

    branches: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    authors: List[str] = field(default_factory=list)
    unmapped_authors: List[str] = field(default_factory=list)
    estimated_revision_count: int = 0
    head_revision: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'branches': self.branches,
            'tags': self.tags,
            'authors': self.authors,
            'unmapped_authors': self.unmapped_authors,
            'estimated_revision_count': self.estimated_revision_count,
            'head_revision': self.head_revision,
        }


class ConnectionProber:
    """Validates source reachability and previews migrations.

    Every call is read-only against the source repository and leaves no
    local state behind.
    """

    def __init__(self, config: RunnerConfig, timeout: Optional[float] = None):
        """Initialize prober.

        Args:
            config: Runner configuration (binary paths)
            timeout: Optional per-command timeout in seconds
        """
        self.config = config
        self.timeout = timeout
        self.logger = logger.bind(component='ConnectionProber')

    def _svn_command(
        self,
        subcommand: str,
        url: str,
        credentials: Optional[SvnCredentials],
        *args: str,
    ) -> List[str]:
        cmd = [self.config.svn_binary, subcommand, *args, url]
        if credentials is not None:
            cmd.extend(credentials.to_args())
        else:
            cmd.append('--non-interactive')
        return cmd

    async def _svn(
        self,
        subcommand: str,
        url: str,
        credentials: Optional[SvnCredentials],
        *args: str,
    ) -> str:
        result = await run_command(
            self._svn_command(subcommand, url, credentials, *args),
            timeout=self.timeout,
        )
        if not result.success:
            raise classify_svn_error(result.stderr, result.returncode)
        return result.stdout

    async def test_connection(
        self, url: str, credentials: Optional[SvnCredentials] = None
    ) -> ConnectionResult:
        """Check that the source can be read with the given credentials.

        Raises:
            AuthenticationError: If the credentials are rejected
            UnreachableError: If the server cannot be reached
            NotFoundError: If the URL does not exist
        """
        self.logger.info(f'Testing SVN connection to {url}')
        info = self.parse_svn_info(await self._svn('info', url, credentials))
        entries = self.parse_svn_list(await self._svn('list', url, credentials))
        self.logger.info(
            f'SVN connection OK: revision {info.get("Revision", "?")}, '
            f'{len(entries)} root entries'
        )
        return ConnectionResult(reachable=True, root_entries=entries, info=info)

    async def head_revision(
        self, url: str, credentials: Optional[SvnCredentials] = None
    ) -> Optional[int]:
        """Current repository revision reported by ``svn info``."""
        info = self.parse_svn_info(await self._svn('info', url, credentials))
        revision = info.get('Revision')
        return int(revision) if revision and revision.isdigit() else None

    async def list_directory(
        self, url: str, credentials: Optional[SvnCredentials] = None
    ) -> List[str]:
        """List a directory, returning an empty list if it does not exist."""
        try:
            return self.parse_svn_list(await self._svn('list', url, credentials))
        except NotFoundError:
            self.logger.debug(f'{url} does not exist, treating as empty')
            return []

    async def extract_users(
        self, url: str, credentials: Optional[SvnCredentials] = None
    ) -> List[str]:
        """Distinct authors in the source history.

        Walks the whole log, so it can take a while on large repositories.
        Cancelling the awaiting task kills the underlying svn process.
        """
        self.logger.info(f'Extracting SVN users from {url}')
        users, _ = self.parse_users_from_log(
            await self._svn('log', url, credentials, '--quiet')
        )
        self.logger.info(f'Found {len(users)} SVN users')
        return users

    async def preview_migration(
        self,
        url: str,
        credentials: Optional[SvnCredentials] = None,
        layout: Optional[LayoutConfig] = None,
        authors_mapping: Optional[Dict[str, str]] = None,
    ) -> MigrationPreview:
        """Compute what a migration would produce without running it.

        Unmapped authors are reported, not rejected; they migrate under a
        synthetic identity.
        """
        layout = layout or LayoutConfig()
        authors_mapping = authors_mapping or {}
        base = url.rstrip('/')

        info = self.parse_svn_info(await self._svn('info', base, credentials))
        users, revision_count = self.parse_users_from_log(
            await self._svn('log', base, credentials, '--quiet')
        )

        branches: List[str] = []
        tags: List[str] = []
        if layout.kind != LayoutKind.SINGLE_TRUNK:
            if layout.branches_path:
                branches = await self.list_directory(
                    f'{base}/{layout.branches_path}', credentials
                )
            if layout.tags_path:
                tags = await self.list_directory(f'{base}/{layout.tags_path}', credentials)

        unmapped = [user for user in users if user not in authors_mapping]
        if unmapped:
            self.logger.warning(
                f'{len(unmapped)} SVN authors have no mapping and will use '
                f'@{self.config.fallback_email_domain} identities'
            )

        revision = info.get('Revision')
        return MigrationPreview(
            branches=branches,
            tags=tags,
            authors=users,
            unmapped_authors=unmapped,
            estimated_revision_count=revision_count,
            head_revision=int(revision) if revision and revision.isdigit() else None,
        )

    @staticmethod
    def parse_svn_info(output: str) -> Dict[str, str]:
        """Parse ``svn info`` ``Key: Value`` lines."""
        info = {}
        for line in output.splitlines():
            key, sep, value = line.partition(':')
            if sep and key.strip():
                info[key.strip()] = value.strip()
        return info

    @staticmethod
    def parse_svn_list(output: str) -> List[str]:
        """Entry names from ``svn list`` output, without trailing slashes."""
        return [line.strip().rstrip('/') for line in output.splitlines() if line.strip()]

    @staticmethod
    def parse_users_from_log(output: str) -> Tuple[List[str], int]:
        """Distinct sorted authors and revision count from ``svn log --quiet``."""
        users = set()
        revisions = 0
        for line in output.splitlines():
            match = _LOG_ENTRY.match(line.strip())
            if not match:
                continue
            revisions += 1
            author = match.group(2).strip()
            if author and author != '(no author)':
                users.add(author)
        return sorted(users), revisions
