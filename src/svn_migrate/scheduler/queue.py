"""Bounded-concurrency FIFO job queues.

The scheduler owns two queues, one for initial migrations and one for
incremental syncs. Each admits jobs in arrival order while it has headroom
under its concurrency limit. Jobs are never retried automatically; a failed
migration has to be resumed by an operator.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

from loguru import logger

from ..config.config import MAX_CONCURRENCY, MIN_CONCURRENCY
from ..exceptions import DuplicateActiveJobError, ValidationError
from ..models.job import Job, JobState, JobType

JobHandler = Callable[[Job], Awaitable[Optional[JobState]]]
Terminator = Callable[[Job], Awaitable[bool]]

FINISHED_RETENTION = 1000


def validate_concurrency(limit: int) -> int:
    """Check a concurrency limit against the allowed range."""
    if not isinstance(limit, int) or not MIN_CONCURRENCY <= limit <= MAX_CONCURRENCY:
        raise ValidationError(
            f'Concurrency limit must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}'
        )
    return limit


class JobQueue:
    """Wait list, active set and finished-job bookkeeping for one job type."""

    def __init__(self, job_type: JobType, concurrency: int):
        self.job_type = job_type
        self.concurrency = validate_concurrency(concurrency)
        self.waiting: Deque[Job] = deque()
        self.active: Dict[str, Job] = {}
        self.finished: Deque[Job] = deque(maxlen=FINISHED_RETENTION)

    @property
    def has_headroom(self) -> bool:
        return len(self.active) < self.concurrency

    def find(self, record_id: str) -> Optional[Job]:
        if record_id in self.active:
            return self.active[record_id]
        for job in self.waiting:
            if job.record_id == record_id:
                return job
        return None

    def counts(self) -> Dict[str, int]:
        counts = {
            'waiting': len(self.waiting),
            'active': len(self.active),
            'completed': 0,
            'failed': 0,
            'cancelled': 0,
        }
        for job in self.finished:
            counts[job.state.value] += 1
        counts['concurrency'] = self.concurrency
        return counts


class JobScheduler:
    """Dispatches jobs to a bound handler under per-queue concurrency limits.

    The handler and terminator are bound after construction so the engine
    can pass its own methods without a circular constructor dependency.

    Usage:
        scheduler = JobScheduler(migration_concurrency=2, sync_concurrency=3)
        scheduler.bind(engine.run_job, engine.terminate_job)
        await scheduler.enqueue(job)
    """

    def __init__(self, migration_concurrency: int = 2, sync_concurrency: int = 3):
        self.queues: Dict[JobType, JobQueue] = {
            JobType.MIGRATION: JobQueue(JobType.MIGRATION, migration_concurrency),
            JobType.SYNC: JobQueue(JobType.SYNC, sync_concurrency),
        }
        self._handler: Optional[JobHandler] = None
        self._terminator: Optional[Terminator] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component='JobScheduler')

    @classmethod
    def from_config(cls, config) -> 'JobScheduler':
        """Build a scheduler from ``SchedulerConfig``."""
        return cls(
            migration_concurrency=config.migration_concurrency,
            sync_concurrency=config.sync_concurrency,
        )

    def bind(self, handler: JobHandler, terminator: Optional[Terminator] = None) -> None:
        self._handler = handler
        self._terminator = terminator

    def find_job(self, record_id: str) -> Optional[Job]:
        """Waiting or active job for a record, from either queue."""
        for queue in self.queues.values():
            job = queue.find(record_id)
            if job is not None:
                return job
        return None

    def has_job(self, record_id: str) -> bool:
        return self.find_job(record_id) is not None

    async def enqueue(self, job: Job) -> Job:
        """Append a job to its queue and dispatch if there is headroom.

        Raises:
            DuplicateActiveJobError: If the record already has a waiting or
                active job in any queue
        """
        if self._handler is None:
            raise RuntimeError('Scheduler has no job handler bound')

        async with self._lock:
            existing = self.find_job(job.record_id)
            if existing is not None:
                raise DuplicateActiveJobError(job.record_id, existing.type.value)

            queue = self.queues[job.type]
            job.state = JobState.WAITING
            queue.waiting.append(job)
            self.logger.info(
                f'Enqueued {job.type.value} job {job.id} for {job.record_id} '
                f'({len(queue.waiting)} waiting, {len(queue.active)} active)'
            )
            self._dispatch(queue)
        return job

    def _dispatch(self, queue: JobQueue) -> None:
        """Admit waiting jobs while there is headroom. Caller holds the lock."""
        while queue.waiting and queue.has_headroom:
            job = queue.waiting.popleft()
            job.state = JobState.ACTIVE
            job.started_at = datetime.now()
            queue.active[job.record_id] = job
            self._tasks[job.id] = asyncio.create_task(self._execute(queue, job))
            self.logger.debug(f'Admitted job {job.id} for {job.record_id}')

    async def _execute(self, queue: JobQueue, job: Job) -> None:
        state = JobState.COMPLETED
        try:
            result = await self._handler(job)
            if result is not None:
                state = JobState(result)
            elif job.cancel_requested:
                state = JobState.CANCELLED
        except asyncio.CancelledError:
            state = JobState.CANCELLED
            raise
        except Exception as e:
            self.logger.exception(f'Job {job.id} for {job.record_id} crashed: {e}')
            job.error = str(e)
            state = JobState.FAILED
        finally:
            await self._release(queue, job, state)

    async def _release(self, queue: JobQueue, job: Job, state: JobState) -> None:
        async with self._lock:
            queue.active.pop(job.record_id, None)
            self._tasks.pop(job.id, None)
            job.state = state
            job.finished_at = datetime.now()
            queue.finished.append(job)
            self.logger.info(
                f'{job.type.value.capitalize()} job {job.id} for {job.record_id} '
                f'finished: {state.value}'
            )
            self._dispatch(queue)

    async def cancel(self, record_id: str) -> Optional[Job]:
        """Cancel the waiting or active job of a record.

        A waiting job is removed at once. For an active job the terminator is
        called and the call returns once the job has actually finished.

        Returns:
            The cancelled job, or None if the record had none
        """
        async with self._lock:
            for queue in self.queues.values():
                for job in list(queue.waiting):
                    if job.record_id == record_id:
                        queue.waiting.remove(job)
                        job.cancel_requested = True
                        job.state = JobState.CANCELLED
                        job.finished_at = datetime.now()
                        queue.finished.append(job)
                        self.logger.info(f'Removed waiting job {job.id} for {record_id}')
                        return job

            job = None
            for queue in self.queues.values():
                if record_id in queue.active:
                    job = queue.active[record_id]
                    break
            if job is None:
                return None
            job.cancel_requested = True
            task = self._tasks.get(job.id)

        self.logger.info(f'Cancelling active job {job.id} for {record_id}')
        stopped = False
        if self._terminator is not None:
            stopped = await self._terminator(job)
        if task is not None:
            if not stopped and not task.done():
                task.cancel()
            await asyncio.wait({task})
        return job

    async def set_concurrency(self, limit: int, job_type: JobType = JobType.MIGRATION) -> None:
        """Change a queue's limit and admit waiting jobs if it grew.

        Lowering the limit never interrupts active jobs; the queue drains
        down to the new limit as they finish.

        Raises:
            ValidationError: If the limit is outside 1-10
        """
        validate_concurrency(limit)
        async with self._lock:
            queue = self.queues[JobType(job_type)]
            old = queue.concurrency
            queue.concurrency = limit
            self.logger.info(
                f'{queue.job_type.value} concurrency changed from {old} to {limit}'
            )
            self._dispatch(queue)

    def get_status(self, store=None) -> Dict[str, Any]:
        """Queue counters, reconciled against the record store when given.

        Finished-job counters only cover retained bookkeeping, so after a
        cleanup they drift from the store. ``actual_failed`` and ``records``
        come from the store itself.
        """
        status: Dict[str, Any] = {
            job_type.value: queue.counts() for job_type, queue in self.queues.items()
        }
        if store is not None:
            counts = store.status_counts()
            status['actual_failed'] = counts.get('failed', 0)
            status['records'] = counts
        return status

    def cleanup(
        self,
        include_completed: bool = True,
        include_failed: bool = True,
        record_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """Drop bookkeeping of finished jobs. Records are not touched.

        Returns:
            Number of entries removed
        """
        states = {JobState.CANCELLED}
        if include_completed:
            states.add(JobState.COMPLETED)
        if include_failed:
            states.add(JobState.FAILED)
        wanted = set(record_ids) if record_ids is not None else None

        removed = 0
        for queue in self.queues.values():
            kept: List[Job] = []
            for job in queue.finished:
                if job.state in states and (wanted is None or job.record_id in wanted):
                    removed += 1
                else:
                    kept.append(job)
            queue.finished.clear()
            queue.finished.extend(kept)
        if removed:
            self.logger.info(f'Cleaned {removed} finished jobs from the queues')
        return removed

    def history(self, record_id: str) -> List[Job]:
        """Retained finished jobs of a record, oldest first."""
        jobs = [
            job
            for queue in self.queues.values()
            for job in queue.finished
            if job.record_id == record_id
        ]
        return sorted(jobs, key=lambda j: j.finished_at or j.enqueued_at)

    @property
    def is_idle(self) -> bool:
        return not self._tasks and not any(q.waiting for q in self.queues.values())

    async def wait_idle(self) -> None:
        """Wait until every queued and active job has finished."""
        while not self.is_idle:
            tasks = list(self._tasks.values())
            if tasks:
                await asyncio.wait(tasks)
            else:
                await asyncio.sleep(0)

    async def close(self) -> None:
        """Cancel everything and wait for active jobs to wind down."""
        record_ids = [
            job.record_id
            for queue in self.queues.values()
            for job in list(queue.waiting) + list(queue.active.values())
        ]
        for record_id in record_ids:
            await self.cancel(record_id)
