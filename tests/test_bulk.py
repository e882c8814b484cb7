"""Tests for bulk registration and authors files."""

import pytest
import yaml

from svn_migrate.exceptions import ValidationError
from svn_migrate.migration.bulk import (
    load_authors_file,
    load_bulk_file,
    parse_bulk_document,
    parse_bulk_yaml,
    write_authors_template,
)

BULK_YAML = """
svn_migrations:
  - svn_url: https://svn.example.com/repos/app
    project_name: app
    target_project_id: 42
    layout: standard
    authors_mapping:
      alice: Alice <alice@example.com>
  - svn_url: https://svn.example.com/repos/lib
    project_name: lib
    gitlab_project_id: 43
    layout:
      trunk: main
"""


class TestBulkParsing:
    """Test bulk file validation."""

    def test_parse_entries(self):
        """Test entries are parsed with aliases."""
        entries = parse_bulk_yaml(BULK_YAML)

        assert [e.project_name for e in entries] == ['app', 'lib']
        assert entries[0].target_project_id == 42
        assert entries[0].authors_mapping == {'alice': 'Alice <alice@example.com>'}
        assert entries[1].target_project_id == 43
        assert entries[1].layout == {'trunk': 'main'}

    @pytest.mark.parametrize('data', [None, [], {'svn_migrations': 'nope'}, {'other': []}])
    def test_invalid_structure(self, data):
        """Test documents without a migrations list are rejected."""
        with pytest.raises(ValidationError, match='svn_migrations'):
            parse_bulk_document(data)

    def test_missing_required_field(self):
        """Test the failing entry is named by position."""
        data = {
            'svn_migrations': [
                {'svn_url': 'https://svn.example.com/a', 'project_name': 'a'},
                {'project_name': 'b'},
            ]
        }

        with pytest.raises(ValidationError, match='Migration 2: svn_url is required'):
            parse_bulk_document(data)

    def test_invalid_yaml(self):
        """Test malformed YAML is a validation error."""
        with pytest.raises(ValidationError):
            parse_bulk_yaml('svn_migrations: [unclosed')

    def test_load_bulk_file(self, tmp_path):
        """Test loading from disk."""
        path = tmp_path / 'bulk.yaml'
        path.write_text(BULK_YAML)

        assert len(load_bulk_file(str(path))) == 2
        with pytest.raises(FileNotFoundError):
            load_bulk_file(str(tmp_path / 'missing.yaml'))


class TestAuthorsFiles:
    """Test authors mapping files."""

    def test_load_txt(self, tmp_path):
        """Test the git-svn text format."""
        path = tmp_path / 'authors.txt'
        path.write_text(
            '# comment\n\nalice = Alice <alice@example.com>\nbob=Bob <bob@example.com>\n'
        )

        assert load_authors_file(str(path)) == {
            'alice': 'Alice <alice@example.com>',
            'bob': 'Bob <bob@example.com>',
        }

    def test_load_txt_malformed(self, tmp_path):
        """Test lines without a separator are rejected."""
        path = tmp_path / 'authors.txt'
        path.write_text('alice Alice <alice@example.com>\n')

        with pytest.raises(ValidationError, match='authors.txt:1'):
            load_authors_file(str(path))

    @pytest.mark.parametrize(
        'content',
        [
            'alice: Alice <alice@example.com>\n',
            'authors_mapping:\n  alice: Alice <alice@example.com>\n',
        ],
    )
    def test_load_yaml(self, tmp_path, content):
        """Test plain and nested YAML mappings."""
        path = tmp_path / 'authors.yaml'
        path.write_text(content)

        assert load_authors_file(str(path)) == {'alice': 'Alice <alice@example.com>'}

    def test_write_txt_template(self, tmp_path):
        """Test the text template uses the fallback domain."""
        path = tmp_path / 'out' / 'authors.txt'

        write_authors_template(str(path), ['alice', 'bob'], 'example.com')

        assert path.read_text() == (
            'alice = alice <alice@example.com>\nbob = bob <bob@example.com>\n'
        )
        assert load_authors_file(str(path))['bob'] == 'bob <bob@example.com>'

    def test_write_yaml_template(self, tmp_path):
        """Test the YAML template nests under authors_mapping."""
        path = tmp_path / 'authors.yaml'

        write_authors_template(str(path), ['alice'], 'example.com')

        data = yaml.safe_load(path.read_text())
        assert data == {'authors_mapping': {'alice': 'alice <alice@example.com>'}}
