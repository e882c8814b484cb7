"""Migration engine - owns the lifecycle of every migration record."""

import asyncio
import re
import uuid
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from ..api.client import GitLabClient
from ..api.retry import RetryPolicy
from ..config.config import Config
from ..events.broadcaster import EventBroadcaster, EventType
from ..exceptions import (
    CredentialsRequiredError,
    DuplicateActiveJobError,
    InvalidTransitionError,
    MigrationError,
    ProcessError,
    ResumabilityError,
    ValidationError,
)
from ..models.job import Job, JobParams, JobState, JobType, ResumeFrom, SvnCredentials
from ..models.migration import (
    LayoutConfig,
    MigrationRecord,
    MigrationStatus,
    ProgressInfo,
    parse_authors_mapping,
)
from ..scheduler.queue import JobScheduler
from ..storage.store import MigrationStore
from ..svn.prober import ConnectionProber
from ..svn.runner import ProcessRunner, RunResult, terminate_pid
from ..utils.logging import mask_url
from .bulk import BulkEntry
from .credentials import CredentialCache
from .workspace import WorkspaceManager

LOG_LINES_PER_RUN = 500
INTERRUPTED_ERROR = 'interrupted'

_SLUG_INVALID = re.compile(r'[^a-zA-Z0-9_.-]+')


def _slugify(name: str) -> str:
    return _SLUG_INVALID.sub('-', name.strip()).strip('-').lower() or 'project'


class MigrationEngine:
    """State machine driving migrations from registration to completion.

    Operator calls (``start``, ``resume``, ``sync``) validate the transition,
    enqueue a job and return at once. The scheduler later calls back into
    ``_run_job`` which runs git-svn and records the outcome. Transitions of
    one record are serialised by a per-record lock; different records never
    wait on each other.

    Usage:
        engine = MigrationEngine.from_config(config)
        await engine.recover_interrupted()
        record = await engine.register(url, target_project_id=42)
        await engine.start(record.id, credentials)
        await engine.wait_idle()
    """

    def __init__(
        self,
        config: Config,
        store: Optional[MigrationStore] = None,
        scheduler: Optional[JobScheduler] = None,
        runner: Optional[ProcessRunner] = None,
        prober: Optional[ConnectionProber] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        workspace: Optional[WorkspaceManager] = None,
        client: Optional[GitLabClient] = None,
        credentials: Optional[CredentialCache] = None,
    ):
        """Initialize migration engine.

        Args:
            config: Application configuration
            store: Record store (built from ``config.storage`` if omitted)
            scheduler: Job scheduler (built from ``config.scheduler`` if omitted)
            runner: git-svn process runner
            prober: Source connection prober
            broadcaster: Event broadcaster
            workspace: Working directory manager
            client: Destination API client; without one nothing is pushed
            credentials: Session credential cache
        """
        self.config = config
        self.store = store or MigrationStore(config.storage.database_url)
        self.scheduler = scheduler or JobScheduler.from_config(config.scheduler)
        self.runner = runner or ProcessRunner(config.runner)
        self.prober = prober or ConnectionProber(config.runner)
        self.broadcaster = broadcaster or EventBroadcaster()
        self.workspace = workspace or WorkspaceManager(config.storage.work_dir)
        self.client = client
        self.credentials = credentials or CredentialCache(config.credentials.ttl)
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = logger.bind(component='MigrationEngine')

        self.scheduler.bind(self._run_job, self._terminate_job)

    @classmethod
    def from_config(cls, config: Config) -> 'MigrationEngine':
        """Build an engine with a destination client from configuration."""
        client = GitLabClient(config.destination, RetryPolicy.from_config(config.retry))
        return cls(config, client=client)

    def _lock_for(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        return lock

    def _emit(self, event_type: EventType, record_id: str, **payload: Any) -> None:
        self.broadcaster.emit(event_type, record_id, payload)

    # Registration

    async def register(
        self,
        source_url: str,
        target_project_id: Optional[int] = None,
        layout: Any = None,
        authors_mapping: Optional[Dict[str, str]] = None,
        project_name: Optional[str] = None,
        project_path: Optional[str] = None,
        namespace_id: Optional[int] = None,
        credentials: Optional[SvnCredentials] = None,
        validate: bool = True,
        options: Optional[Dict[str, Any]] = None,
    ) -> MigrationRecord:
        """Persist a new migration as ``registered`` without enqueueing it.

        Args:
            source_url: SVN repository URL
            target_project_id: Existing destination project, or None to create one
            layout: Layout kind name or mapping
            authors_mapping: SVN username to ``Name <email>``
            project_name: Display name (defaults to the last URL segment)
            project_path: Destination path (defaults to a slug of the name)
            namespace_id: Namespace for a newly created destination project
            credentials: SVN credentials, cached for this session
            validate: Test the source connection before persisting
            options: Free-form options kept in metadata

        Raises:
            ValidationError: If the URL, layout or authors mapping is malformed
            AuthenticationError: If the source rejects the credentials
            UnreachableError: If the source cannot be reached
        """
        layout_config = LayoutConfig.parse(layout)
        mapping = parse_authors_mapping(authors_mapping)
        name = project_name or source_url.rstrip('/').rsplit('/', 1)[-1]
        metadata: Dict[str, Any] = {
            'project_name': name,
            'project_path': project_path or _slugify(name),
        }
        if credentials is not None:
            metadata['svn_username'] = credentials.username
        if options:
            metadata['options'] = dict(options)

        try:
            record = MigrationRecord(
                id=str(uuid.uuid4()),
                source_url=source_url,
                target_project_id=target_project_id or 0,
                layout=layout_config,
                authors_mapping=mapping,
                metadata=metadata,
            )
        except ValueError as e:
            raise ValidationError(f'Invalid migration: {e}') from e

        if validate:
            await self.prober.test_connection(record.source_url, credentials)

        if target_project_id is None:
            if self.client is None:
                raise ValidationError('target_project_id is required without a destination client')
            project = await self.client.create_project_async(
                name, metadata['project_path'], namespace_id
            )
            record = record.copy(update={'target_project_id': int(project['id'])})

        record = self.store.create(record)
        if credentials is not None:
            self.credentials.put(record.source_url, credentials)

        self.store.add_log(record.id, 'info', f'Registered migration of {mask_url(record.source_url)}')
        self._emit(
            EventType.REGISTERED,
            record.id,
            source_url=mask_url(record.source_url),
            target_project_id=record.target_project_id,
        )
        self.logger.info(f'Registered migration {record.id} for {mask_url(record.source_url)}')
        return record

    async def register_bulk(
        self, entries: Iterable[BulkEntry], validate: bool = False
    ) -> Dict[str, Any]:
        """Register several migrations, collecting per-entry errors.

        Returns:
            ``{'registered': [records], 'errors': [{'index', 'svn_url', 'error'}]}``
        """
        registered: List[MigrationRecord] = []
        errors: List[Dict[str, Any]] = []
        for index, entry in enumerate(entries, start=1):
            credentials = None
            if entry.svn_username and entry.svn_password:
                credentials = SvnCredentials(
                    username=entry.svn_username, password=entry.svn_password
                )
            try:
                record = await self.register(
                    entry.svn_url,
                    target_project_id=entry.target_project_id,
                    layout=entry.layout,
                    authors_mapping=entry.authors_mapping,
                    project_name=entry.project_name,
                    project_path=entry.project_path,
                    namespace_id=entry.namespace_id,
                    credentials=credentials,
                    validate=validate,
                )
            except MigrationError as e:
                self.logger.warning(f'Bulk entry {index} ({entry.svn_url}) rejected: {e}')
                errors.append({'index': index, 'svn_url': entry.svn_url, 'error': str(e)})
                continue
            registered.append(record)
        return {'registered': registered, 'errors': errors}

    # Credentials and job parameters

    def _resolve_credentials(
        self, record: MigrationRecord, credentials: Optional[SvnCredentials]
    ) -> Optional[SvnCredentials]:
        """Explicit credentials win, then the session cache.

        Records registered anonymously run without credentials. Records that
        carry a username hint but have no cached password need re-entry.
        """
        if credentials is not None:
            self.credentials.put(record.source_url, credentials)
            if record.metadata.get('svn_username') != credentials.username:
                self.store.update(record.id, metadata={'svn_username': credentials.username})
            return credentials

        cached = self.credentials.get(record.source_url)
        if cached is not None:
            return cached
        if record.metadata.get('svn_username'):
            raise CredentialsRequiredError(record.source_url)
        return None

    def _build_params(
        self,
        record: MigrationRecord,
        credentials: Optional[SvnCredentials],
        checkpoint: Optional[int] = None,
        resume_from: Optional[ResumeFrom] = None,
    ) -> JobParams:
        return JobParams(
            source_url=record.source_url,
            target_project_id=record.target_project_id,
            project_path=record.project_path,
            layout=record.layout,
            authors_mapping=record.authors_mapping,
            credentials=credentials,
            checkpoint=checkpoint,
            resume_from=resume_from,
        )

    # Operator transitions

    async def start(
        self, migration_id: str, credentials: Optional[SvnCredentials] = None
    ) -> MigrationRecord:
        """Enqueue the initial migration of a ``registered`` record.

        Raises:
            InvalidTransitionError: If the record is not ``registered``
            CredentialsRequiredError: If credentials have to be re-entered
            DuplicateActiveJobError: If a job is already queued or running
        """
        async with self._lock_for(migration_id):
            record = self.store.require(migration_id)
            if record.status != MigrationStatus.REGISTERED:
                raise InvalidTransitionError(migration_id, record.status.value, 'pending')

            params = self._build_params(record, self._resolve_credentials(record, credentials))
            job = await self.scheduler.enqueue(
                Job(type=JobType.MIGRATION, record_id=migration_id, params=params)
            )
            record = self.store.set_status(
                migration_id, MigrationStatus.PENDING, job_id=job.id, error=None
            )
            self.store.add_log(migration_id, 'info', 'Migration queued')
        return record

    async def bulk_start(
        self,
        migration_ids: Iterable[str],
        credentials: Optional[SvnCredentials] = None,
    ) -> Dict[str, Any]:
        """Start several registered migrations.

        Returns:
            ``{'started': int, 'failed': int, 'errors': [{'migration_id', 'error'}]}``
        """
        results: Dict[str, Any] = {'started': 0, 'failed': 0, 'errors': []}
        for migration_id in migration_ids:
            try:
                await self.start(migration_id, credentials)
            except MigrationError as e:
                results['failed'] += 1
                results['errors'].append({'migration_id': migration_id, 'error': str(e)})
            else:
                results['started'] += 1
        self.logger.info(
            f'Bulk start: {results["started"]} started, {results["failed"]} failed'
        )
        return results

    async def stop(self, migration_id: str) -> MigrationRecord:
        """Cancel the queued or running job of a record.

        Returns once the process is gone and the record is ``cancelled``.

        Raises:
            InvalidTransitionError: If the record has no active job
        """
        record = self.store.require(migration_id)
        if not record.status.is_active:
            raise InvalidTransitionError(migration_id, record.status.value, 'cancelled')

        self.logger.info(f'Stopping migration {migration_id}')
        # The job takes the record lock itself to record its outcome
        job = await self.scheduler.cancel(migration_id)
        if job is None:
            await self._terminate_stale_process(record)

        async with self._lock_for(migration_id):
            self._mark_cancelled(migration_id)
            return self.store.require(migration_id)

    def check_resumability(self, migration_id: str) -> Dict[str, Any]:
        """Verify that a record can continue from its checkpoint.

        Raises:
            ResumabilityError: If the working copy is missing or corrupted
        """
        record = self.store.require(migration_id)
        if not self.workspace.is_resumable(migration_id):
            raise ResumabilityError(
                f'Working copy of migration {migration_id} is missing or corrupted; '
                'resume from the beginning instead'
            )
        return {
            'resumable': True,
            'last_synced_revision': record.last_synced_revision,
            'work_path': str(self.workspace.repo_path(migration_id)),
        }

    async def resume(
        self,
        migration_id: str,
        resume_from: Any = ResumeFrom.LAST_REVISION,
        credentials: Optional[SvnCredentials] = None,
    ) -> MigrationRecord:
        """Re-enqueue a ``failed`` or ``cancelled`` migration.

        ``beginning`` discards the working copy and replays everything;
        ``lastRevision`` continues the existing working copy from the
        checkpoint. The checkpoint itself is kept either way.

        Raises:
            InvalidTransitionError: If the record is not failed or cancelled
            ResumabilityError: If ``lastRevision`` is requested but the
                working copy is unusable
            CredentialsRequiredError: If credentials have to be re-entered
        """
        try:
            resume_from = ResumeFrom(resume_from)
        except ValueError as e:
            raise ValidationError(f'Invalid resume point: {resume_from}') from e

        async with self._lock_for(migration_id):
            record = self.store.require(migration_id)
            if record.status not in (MigrationStatus.FAILED, MigrationStatus.CANCELLED):
                raise InvalidTransitionError(migration_id, record.status.value, 'pending')
            credentials = self._resolve_credentials(record, credentials)

            if resume_from == ResumeFrom.LAST_REVISION:
                self.check_resumability(migration_id)
                checkpoint = record.last_synced_revision
            else:
                if self.scheduler.has_job(migration_id):
                    raise DuplicateActiveJobError(migration_id)
                self.workspace.discard(migration_id)
                checkpoint = None

            params = self._build_params(record, credentials, checkpoint, resume_from)
            job = await self.scheduler.enqueue(
                Job(type=JobType.MIGRATION, record_id=migration_id, params=params)
            )
            record = self.store.set_status(
                migration_id,
                MigrationStatus.PENDING,
                job_id=job.id,
                error=None,
                resume_from=resume_from.value,
            )
            self.store.add_log(
                migration_id, 'info', f'Resume queued from {resume_from.value}'
            )
            self._emit(
                EventType.RESUMED,
                migration_id,
                resume_from=resume_from.value,
                checkpoint=checkpoint,
            )
        return record

    async def sync(
        self, migration_id: str, credentials: Optional[SvnCredentials] = None
    ) -> MigrationRecord:
        """Enqueue an incremental sync of a ``completed`` migration.

        Raises:
            InvalidTransitionError: If the record is not ``completed``
            CredentialsRequiredError: If credentials have to be re-entered
        """
        async with self._lock_for(migration_id):
            record = self.store.require(migration_id)
            if record.status != MigrationStatus.COMPLETED:
                raise InvalidTransitionError(migration_id, record.status.value, 'syncing')
            credentials = self._resolve_credentials(record, credentials)

            checkpoint = record.last_synced_revision
            if not self.workspace.is_resumable(migration_id):
                self.logger.warning(
                    f'No working copy for {migration_id}, sync will replay full history'
                )
                checkpoint = None

            params = self._build_params(record, credentials, checkpoint)
            job = await self.scheduler.enqueue(
                Job(type=JobType.SYNC, record_id=migration_id, params=params)
            )
            record = self.store.set_status(
                migration_id, MigrationStatus.SYNCING, job_id=job.id, error=None
            )
            self.store.add_log(migration_id, 'info', 'Sync queued')
            self._emit(
                EventType.SYNCING, migration_id, checkpoint=record.last_synced_revision
            )
        return record

    async def delete(self, migration_id: str) -> bool:
        """Delete a record, cancelling its job and reclaiming its working directory."""
        record = self.store.require(migration_id)
        if self.scheduler.has_job(migration_id):
            await self.scheduler.cancel(migration_id)
        else:
            await self._terminate_stale_process(record)

        async with self._lock_for(migration_id):
            self.workspace.discard(migration_id)
            deleted = self.store.delete(migration_id)
        self._locks.pop(migration_id, None)

        self._emit(EventType.DELETED, migration_id)
        self.logger.info(f'Deleted migration {migration_id}')
        return deleted

    async def clean(
        self,
        migration_ids: Optional[Iterable[str]] = None,
        include_completed: bool = True,
        include_failed: bool = False,
    ) -> Dict[str, Any]:
        """Bulk-delete records and purge finished queue bookkeeping.

        With explicit ``migration_ids`` those records are deleted whatever
        their status. Otherwise completed and/or failed (and cancelled)
        records are selected by status.
        """
        requested = list(migration_ids) if migration_ids is not None else []
        if requested:
            targets = requested
        else:
            statuses = []
            if include_completed:
                statuses.append(MigrationStatus.COMPLETED)
            if include_failed:
                statuses.extend([MigrationStatus.FAILED, MigrationStatus.CANCELLED])
            targets = [r.id for r in self.store.list(statuses)] if statuses else []

        deleted: List[str] = []
        errors: List[Dict[str, str]] = []
        for migration_id in targets:
            try:
                await self.delete(migration_id)
            except MigrationError as e:
                errors.append({'migration_id': migration_id, 'error': str(e)})
            else:
                deleted.append(migration_id)

        jobs_removed = self.scheduler.cleanup(
            include_completed=include_completed,
            include_failed=include_failed,
            record_ids=requested or None,
        )
        self.logger.info(f'Cleaned {len(deleted)} migrations, {jobs_removed} queue entries')
        return {
            'deleted': len(deleted),
            'ids': deleted,
            'errors': errors,
            'jobs_removed': jobs_removed,
        }

    # Queries

    def list_migrations(
        self, statuses: Optional[Iterable[MigrationStatus]] = None
    ) -> List[MigrationRecord]:
        return self.store.list(statuses)

    def get_migration(self, migration_id: str) -> MigrationRecord:
        return self.store.require(migration_id)

    def get_logs(self, migration_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        self.store.require(migration_id)
        return self.store.get_logs(migration_id, limit)

    def get_queue_status(self) -> Dict[str, Any]:
        return self.scheduler.get_status(self.store)

    async def set_concurrency_limit(self, limit: int, queue: str = 'migration') -> None:
        """Adjust a queue's concurrency limit (1-10)."""
        try:
            job_type = JobType(queue)
        except ValueError as e:
            raise ValidationError(f'Unknown queue: {queue}') from e
        await self.scheduler.set_concurrency(limit, job_type)

    def subscribe(self, migration_id: Optional[str] = None, maxsize: Optional[int] = None):
        return self.broadcaster.subscribe(migration_id, maxsize)

    async def recover_interrupted(self) -> List[str]:
        """Fail records left active by a previous engine process.

        Their checkpoints are untouched, so they can be resumed.
        """
        recovered = []
        for record in self.store.list(
            [MigrationStatus.PENDING, MigrationStatus.RUNNING, MigrationStatus.SYNCING]
        ):
            if self.scheduler.has_job(record.id):
                continue
            await self._terminate_stale_process(record)
            self.store.update(
                record.id,
                status=MigrationStatus.FAILED,
                metadata={'error': INTERRUPTED_ERROR, 'pid': None},
            )
            self.store.add_log(record.id, 'error', 'Migration interrupted by engine restart')
            self._emit(EventType.FAILED, record.id, error=INTERRUPTED_ERROR)
            recovered.append(record.id)

        if recovered:
            self.logger.warning(f'Marked {len(recovered)} interrupted migrations as failed')
        return recovered

    async def wait_idle(self) -> None:
        await self.scheduler.wait_idle()

    async def close(self) -> None:
        """Cancel outstanding jobs and release resources."""
        await self.scheduler.close()
        self.broadcaster.close()
        if self.client is not None:
            self.client.close()

    # Job execution (scheduler callbacks)

    async def _run_job(self, job: Job) -> JobState:
        migration_id = job.record_id
        active_status = (
            MigrationStatus.RUNNING if job.type == JobType.MIGRATION else MigrationStatus.SYNCING
        )

        async with self._lock_for(migration_id):
            record = self.store.get(migration_id)
            if record is None:
                self.logger.warning(f'Job {job.id} dropped: migration {migration_id} deleted')
                return JobState.CANCELLED
            if job.cancel_requested:
                self._mark_cancelled(migration_id)
                return JobState.CANCELLED
            if record.status != active_status:
                if not record.status.can_transition(active_status):
                    self.logger.warning(
                        f'Job {job.id} dropped: {migration_id} is {record.status.value}'
                    )
                    return JobState.CANCELLED
                record = self.store.set_status(migration_id, active_status, job_id=job.id)
            self.store.update(
                migration_id, metadata={'progress': ProgressInfo().dict(), 'pid': None}
            )
            self._emit(
                EventType.STARTED,
                migration_id,
                job_type=job.type.value,
                checkpoint=job.params.checkpoint,
            )
        self.logger.bind(migration_id=migration_id).info(
            f'Running {job.type.value} job {job.id} for {migration_id}'
        )

        try:
            params = job.params
            if params.expected_head is None:
                head = await self.prober.head_revision(params.source_url, params.credentials)
                params = params.copy(update={'expected_head': head})
            push_url = await self._push_url(record)
            if job.cancel_requested:
                raise ProcessError('Cancelled before start', cancelled=True)
            result = await self.runner.run(
                migration_id,
                params,
                self.workspace.ensure(migration_id),
                push_url=push_url,
                on_progress=lambda info: self._on_progress(migration_id, info),
                on_log=self._log_relay(migration_id),
                on_spawn=lambda pid: self.store.update(migration_id, metadata={'pid': pid}),
            )
        except asyncio.CancelledError:
            self._mark_cancelled(migration_id)
            raise
        except ProcessError as e:
            if e.cancelled or job.cancel_requested:
                return await self._cancelled(job)
            return await self._fail(job, e)
        except Exception as e:
            return await self._fail(job, e)
        return await self._complete(job, result)

    async def _terminate_job(self, job: Job) -> bool:
        return await self.runner.kill(job.record_id)

    async def _push_url(self, record: MigrationRecord) -> Optional[str]:
        if self.client is None:
            return None
        project = await self.client.get_project_async(record.target_project_id)
        return self.client.build_push_url(project)

    def _on_progress(self, migration_id: str, info: ProgressInfo) -> None:
        self.store.update(migration_id, metadata={'progress': info.dict()})
        self._emit(EventType.PROGRESS, migration_id, **info.dict())

    def _log_relay(self, migration_id: str):
        remaining = [LOG_LINES_PER_RUN]

        def relay(level: str, line: str) -> None:
            message = mask_url(line)
            if remaining[0] > 0:
                remaining[0] -= 1
                self.store.add_log(migration_id, level, message)
                if remaining[0] == 0:
                    self.store.add_log(
                        migration_id, 'warning', 'Log limit reached, further output not stored'
                    )
            self._emit(EventType.LOG, migration_id, level=level, message=message)

        return relay

    async def _complete(self, job: Job, result: RunResult) -> JobState:
        migration_id = job.record_id
        async with self._lock_for(migration_id):
            record = self.store.get(migration_id)
            if record is None:
                return JobState.COMPLETED

            checkpoint = self.store.advance_checkpoint(migration_id, result.last_revision)
            summary = {
                'revisions_processed': result.revisions_processed,
                'last_revision': checkpoint,
            }
            progress = ProgressInfo(
                current=result.revisions_processed,
                total=result.revisions_processed,
                percentage=100.0,
                revision=checkpoint,
            )
            metadata = {
                'summary': summary,
                'progress': progress.dict(),
                'error': None,
                'pid': None,
                'resume_from': None,
            }
            if record.status.can_transition(MigrationStatus.COMPLETED):
                self.store.update(migration_id, status=MigrationStatus.COMPLETED, metadata=metadata)
            else:
                self.store.update(migration_id, metadata=metadata)

            self.store.add_log(
                migration_id,
                'info',
                f'{job.type.value.capitalize()} completed at revision {checkpoint} '
                f'({result.revisions_processed} new revisions)',
            )
            self._emit(
                EventType.COMPLETED,
                migration_id,
                last_synced_revision=checkpoint,
                revisions_processed=result.revisions_processed,
            )

        if not self.config.runner.keep_work_dir:
            self.workspace.discard(migration_id)
        self.logger.info(f'Migration {migration_id} completed at revision {checkpoint}')
        return JobState.COMPLETED

    async def _fail(self, job: Job, error: Exception) -> JobState:
        migration_id = job.record_id
        message = str(error) or error.__class__.__name__
        log = self.logger.bind(migration_id=migration_id)
        if isinstance(error, MigrationError):
            log.error(f'{job.type.value.capitalize()} {migration_id} failed: {message}')
        else:
            log.exception(f'Unexpected error in {migration_id}: {message}')
        job.error = message

        async with self._lock_for(migration_id):
            record = self.store.get(migration_id)
            if record is None:
                return JobState.FAILED
            if record.status.can_transition(MigrationStatus.FAILED):
                self.store.update(
                    migration_id,
                    status=MigrationStatus.FAILED,
                    metadata={'error': message, 'pid': None},
                )
            detail = error.detail if isinstance(error, ProcessError) else message
            self.store.add_log(migration_id, 'error', mask_url(detail))
            self._emit(
                EventType.FAILED,
                migration_id,
                error=message,
                error_type=error.__class__.__name__,
            )
        return JobState.FAILED

    async def _cancelled(self, job: Job) -> JobState:
        async with self._lock_for(job.record_id):
            self._mark_cancelled(job.record_id)
        return JobState.CANCELLED

    def _mark_cancelled(self, migration_id: str) -> None:
        record = self.store.get(migration_id)
        if record is None or not record.status.can_transition(MigrationStatus.CANCELLED):
            return
        self.store.update(
            migration_id, status=MigrationStatus.CANCELLED, metadata={'pid': None}
        )
        self.store.add_log(migration_id, 'warning', 'Migration cancelled')
        self._emit(
            EventType.CANCELLED,
            migration_id,
            last_synced_revision=record.last_synced_revision,
        )
        self.logger.info(f'Migration {migration_id} cancelled')

    async def _terminate_stale_process(self, record: MigrationRecord) -> None:
        """Best-effort kill of a process recorded by an earlier engine run."""
        pid = record.metadata.get('pid')
        if pid and not self.runner.is_running(record.id):
            try:
                if await terminate_pid(int(pid), self.config.runner.grace_period):
                    self.logger.warning(f'Terminated stale process {pid} of {record.id}')
            except ProcessError as e:
                self.logger.warning(f'Could not terminate process {pid}: {e}')
        self.workspace.remove_lock_files(record.id)
