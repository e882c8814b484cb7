"""Migration error taxonomy."""

from typing import List, Optional


class MigrationError(Exception):
    """Base exception for SVN migration errors."""

    pass


class AuthenticationError(MigrationError):
    """Credentials were rejected by the source or destination."""

    pass


class CredentialsRequiredError(AuthenticationError):
    """No usable credentials are cached or persisted for an operation.

    Raised when a migration is started, resumed or synced after the session
    credential cache expired; callers must ask the operator to re-enter them.
    """

    def __init__(self, source_url: str):
        super().__init__(
            f'SVN credentials not found for {source_url}. '
            'Please provide username and password.'
        )
        self.source_url = source_url


class UnreachableError(MigrationError):
    """The source repository could not be reached over the network."""

    pass


class NotFoundError(MigrationError):
    """A source path, destination project or record does not exist."""

    pass


class MigrationNotFoundError(NotFoundError):
    """No migration record exists for the given id."""

    def __init__(self, migration_id: str):
        super().__init__(f'Migration not found: {migration_id}')
        self.migration_id = migration_id


class DuplicateActiveJobError(MigrationError):
    """A job for the same migration is already queued or running."""

    def __init__(self, migration_id: str, queue: Optional[str] = None):
        where = f' in {queue} queue' if queue else ''
        super().__init__(
            f'Migration {migration_id} already has an active job{where}'
        )
        self.migration_id = migration_id
        self.queue = queue


class ProcessError(MigrationError):
    """The checkout/replay process exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        tail: Optional[List[str]] = None,
        cancelled: bool = False,
    ):
        """Initialize process error.

        Args:
            message: Error message
            returncode: Process exit status (negative for signals)
            tail: Last captured output lines
            cancelled: True if the process was terminated on request
        """
        super().__init__(message)
        self.returncode = returncode
        self.tail = tail or []
        self.cancelled = cancelled

    @property
    def detail(self) -> str:
        """Error message followed by the captured output tail."""
        if not self.tail:
            return str(self)
        return str(self) + '\n' + '\n'.join(self.tail)


class ResumabilityError(MigrationError):
    """The working directory needed to resume is missing or corrupted."""

    pass


class ValidationError(MigrationError):
    """Malformed layout, authors mapping or registration input."""

    pass


class InvalidTransitionError(MigrationError):
    """The requested operation is not valid from the current status."""

    def __init__(self, migration_id: str, current: str, target: str):
        super().__init__(
            f'Cannot move migration {migration_id} from {current} to {target}'
        )
        self.migration_id = migration_id
        self.current = current
        self.target = target
