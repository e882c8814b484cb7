"""Job scheduling."""

from .queue import JobQueue, JobScheduler, validate_concurrency

__all__ = ['JobQueue', 'JobScheduler', 'validate_concurrency']
