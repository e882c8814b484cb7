"""Migration lifecycle management."""

from .bulk import (
    BulkEntry,
    load_authors_file,
    load_bulk_file,
    parse_bulk_yaml,
    write_authors_template,
)
from .credentials import CredentialCache
from .engine import MigrationEngine
from .workspace import WorkspaceManager

__all__ = [
    'BulkEntry',
    'CredentialCache',
    'MigrationEngine',
    'WorkspaceManager',
    'load_authors_file',
    'load_bulk_file',
    'parse_bulk_yaml',
    'write_authors_template',
]
