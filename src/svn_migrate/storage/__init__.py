"""Durable migration record storage."""

from .database import dispose_database, get_session, init_database
from .store import MigrationStore

__all__ = ['MigrationStore', 'dispose_database', 'get_session', 'init_database']
