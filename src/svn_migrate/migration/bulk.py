"""Bulk registration files.

A bulk file is YAML with a top-level ``svn_migrations`` list::

    svn_migrations:
      - svn_url: https://svn.example.com/repos/app
        project_name: app
        target_project_id: 42
        layout: standard
        authors_mapping:
          alice: Alice <alice@example.com>
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, validator

from ..exceptions import ValidationError


class BulkEntry(BaseModel):
    """One migration to register from a bulk file."""

    svn_url: str = Field(..., description='SVN repository URL')
    project_name: str = Field(..., description='Destination project name')
    project_path: Optional[str] = Field(default=None, description='Destination path')
    target_project_id: Optional[int] = Field(
        default=None, description='Existing destination project ID'
    )
    namespace_id: Optional[int] = Field(
        default=None, description='Namespace for a newly created project'
    )
    layout: Optional[Any] = Field(default=None, description='Layout kind or mapping')
    authors_mapping: Dict[str, str] = Field(default_factory=dict)
    svn_username: Optional[str] = Field(default=None)
    svn_password: Optional[str] = Field(default=None)

    @validator('svn_url', 'project_name')
    def validate_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('must not be empty')
        return v.strip()


def parse_bulk_document(data: Any) -> List[BulkEntry]:
    """Validate a loaded bulk document.

    Raises:
        ValidationError: If the structure or any entry is invalid
    """
    if not isinstance(data, dict) or not isinstance(data.get('svn_migrations'), list):
        raise ValidationError('Invalid YAML structure. Expected "svn_migrations" array.')

    entries = []
    for index, item in enumerate(data['svn_migrations'], start=1):
        if not isinstance(item, dict):
            raise ValidationError(f'Migration {index}: entry must be a mapping')
        for required in ('svn_url', 'project_name'):
            if not item.get(required):
                raise ValidationError(f'Migration {index}: {required} is required')
        item = dict(item)
        # Accept the destination id under its platform name as well
        if 'gitlab_project_id' in item and 'target_project_id' not in item:
            item['target_project_id'] = item.pop('gitlab_project_id')
        try:
            entries.append(BulkEntry(**item))
        except ValueError as e:
            raise ValidationError(f'Migration {index}: {e}') from e
    return entries


def parse_bulk_yaml(content: str) -> List[BulkEntry]:
    """Parse bulk YAML text."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(f'Invalid YAML: {e}') from e
    return parse_bulk_document(data)


def load_bulk_file(path: str) -> List[BulkEntry]:
    """Read and validate a bulk file."""
    bulk_file = Path(path)
    if not bulk_file.exists():
        raise FileNotFoundError(f'Bulk file not found: {path}')
    with open(bulk_file, 'r', encoding='utf-8') as f:
        return parse_bulk_yaml(f.read())


def load_authors_file(path: str) -> Dict[str, str]:
    """Read an authors mapping.

    ``.txt`` files use the git-svn ``username = Name <email>`` format; any
    other file is YAML, either a plain mapping or one under
    ``authors_mapping``.
    """
    authors_file = Path(path)
    if not authors_file.exists():
        raise FileNotFoundError(f'Authors file not found: {path}')
    content = authors_file.read_text(encoding='utf-8')

    if authors_file.suffix == '.txt':
        mapping = {}
        for number, line in enumerate(content.splitlines(), start=1):
            if not line.strip() or line.lstrip().startswith('#'):
                continue
            username, sep, identity = line.partition('=')
            if not sep:
                raise ValidationError(f'{path}:{number}: expected "username = Name <email>"')
            mapping[username.strip()] = identity.strip()
        return mapping

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f'Invalid YAML: {e}') from e
    if isinstance(data, dict) and isinstance(data.get('authors_mapping'), dict):
        data = data['authors_mapping']
    if not isinstance(data, dict):
        raise ValidationError('Authors file must contain a mapping of username to identity')
    return {str(k): str(v) for k, v in data.items()}


def write_authors_template(path: str, users: List[str], domain: str) -> None:
    """Write a mapping stub with a placeholder identity for every user."""
    authors_file = Path(path)
    authors_file.parent.mkdir(parents=True, exist_ok=True)
    mapping = {user: f'{user} <{user}@{domain}>' for user in users}

    with open(authors_file, 'w', encoding='utf-8') as f:
        if authors_file.suffix == '.txt':
            f.writelines(f'{user} = {identity}\n' for user, identity in mapping.items())
        else:
            yaml.dump({'authors_mapping': mapping}, f, default_flow_style=False, sort_keys=False)
