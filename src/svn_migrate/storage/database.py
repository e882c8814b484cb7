"""Database engine and session management."""

from contextlib import contextmanager
from typing import Dict, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

_engines: Dict[str, Engine] = {}
_session_factories: Dict[str, sessionmaker] = {}


def _is_memory_url(database_url: str) -> bool:
    return database_url in ('sqlite://', 'sqlite:///:memory:')


def init_database(database_url: str) -> Engine:
    """Create (or reuse) the engine for a URL and ensure tables exist.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        SQLAlchemy engine
    """
    if database_url in _engines:
        return _engines[database_url]

    kwargs = {'future': True}
    if database_url.startswith('sqlite'):
        kwargs['connect_args'] = {'check_same_thread': False}
        if _is_memory_url(database_url):
            kwargs['poolclass'] = StaticPool

    engine = create_engine(database_url, **kwargs)

    if database_url.startswith('sqlite'):

        @event.listens_for(engine, 'connect')
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA foreign_keys=ON')
            cursor.close()

    Base.metadata.create_all(engine)

    _engines[database_url] = engine
    _session_factories[database_url] = sessionmaker(
        bind=engine, expire_on_commit=False
    )
    return engine


@contextmanager
def get_session(database_url: str) -> Iterator[Session]:
    """Provide a transactional session scope.

    Commits on success, rolls back on any exception and always closes.
    """
    if database_url not in _session_factories:
        init_database(database_url)

    session = _session_factories[database_url]()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_database(database_url: str) -> None:
    """Dispose the engine for a URL and forget its session factory."""
    engine = _engines.pop(database_url, None)
    _session_factories.pop(database_url, None)
    if engine is not None:
        engine.dispose()
