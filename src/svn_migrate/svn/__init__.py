"""Subversion access: connection probing and git-svn process supervision."""

from .prober import ConnectionProber, ConnectionResult, MigrationPreview
from .runner import ProcessHandle, ProcessRunner, RunResult

__all__ = [
    'ConnectionProber',
    'ConnectionResult',
    'MigrationPreview',
    'ProcessHandle',
    'ProcessRunner',
    'RunResult',
]
