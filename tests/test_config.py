"""Tests for configuration management."""

import pytest
import tempfile
import os
from unittest.mock import patch

from svn_migrate.config.config import (
    Config,
    GitLabInstanceConfig,
    RunnerConfig,
    SchedulerConfig,
    StorageConfig,
)


class TestGitLabInstanceConfig:
    """Test GitLab instance configuration."""

    def test_valid_config(self):
        """Test valid configuration creation."""
        config = GitLabInstanceConfig(
            url='https://gitlab.example.com/',
            token='test-token',
            api_version='v4',
            timeout=30,
        )

        assert config.url == 'https://gitlab.example.com'
        assert config.token == 'test-token'
        assert config.timeout == 30

    def test_url_validation(self):
        """Test URL validation."""
        with pytest.raises(ValueError):
            GitLabInstanceConfig(url='gitlab.example.com', token='test')

    def test_missing_token(self):
        """Test that missing token raises validation error."""
        with pytest.raises(ValueError):
            GitLabInstanceConfig(url='https://gitlab.com')


class TestSectionConfigs:
    """Test scheduler, storage and runner sections."""

    def test_scheduler_defaults(self):
        """Test default concurrency limits."""
        config = SchedulerConfig()

        assert config.migration_concurrency == 2
        assert config.sync_concurrency == 3

    @pytest.mark.parametrize('limit', [0, 11, -1])
    def test_scheduler_bounds(self, limit):
        """Test concurrency outside 1-10 is rejected."""
        with pytest.raises(ValueError):
            SchedulerConfig(migration_concurrency=limit)

    def test_storage_requires_absolute_work_dir(self):
        """Test relative working directories are rejected."""
        with pytest.raises(ValueError):
            StorageConfig(work_dir='relative/path')

    def test_runner_defaults(self):
        """Test runner defaults."""
        config = RunnerConfig()

        assert config.grace_period == 10.0
        assert config.default_branch == 'main'
        assert config.keep_work_dir is True

    def test_runner_rejects_non_positive_grace(self):
        """Test grace period must be positive."""
        with pytest.raises(ValueError):
            RunnerConfig(grace_period=0)


class TestConfig:
    """Test main configuration class."""

    def test_config_from_dict(self):
        """Test configuration creation from dictionary."""
        config = Config(
            destination={'url': 'https://dest.gitlab.com', 'token': 'dest-token'},
            scheduler={'migration_concurrency': 4},
            credentials={'ttl': 60},
        )

        assert config.destination.url == 'https://dest.gitlab.com'
        assert config.scheduler.migration_concurrency == 4
        assert config.scheduler.sync_concurrency == 3
        assert config.credentials.ttl == 60
        assert config.retry.max_attempts == 4

    def test_unknown_section_rejected(self):
        """Test extra top-level keys are not allowed."""
        with pytest.raises(ValueError):
            Config(
                destination={'url': 'https://dest.gitlab.com', 'token': 't'},
                source={'url': 'https://src.gitlab.com'},
            )

    def test_config_from_file(self):
        """Test configuration loading from YAML file."""
        config_content = """
destination:
  url: https://dest.gitlab.com
  token: dest-token

scheduler:
  migration_concurrency: 5
  sync_concurrency: 1

storage:
  database_url: sqlite:///migrations.db
  work_dir: /var/lib/svn-migrate

runner:
  default_branch: master
"""

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(config_content)
            f.flush()

            try:
                config = Config.from_file(f.name)
                assert config.destination.url == 'https://dest.gitlab.com'
                assert config.scheduler.migration_concurrency == 5
                assert config.scheduler.sync_concurrency == 1
                assert config.storage.work_dir == '/var/lib/svn-migrate'
                assert config.runner.default_branch == 'master'
            finally:
                os.unlink(f.name)

    def test_config_from_env(self):
        """Test configuration loading from environment variables."""
        env_vars = {
            'GITLAB_URL': 'https://dest.gitlab.com',
            'GITLAB_TOKEN': 'dest-token',
            'MAX_CONCURRENT_MIGRATIONS': '6',
            'SVN_MIGRATE_WORK_DIR': '/srv/work',
            'SVN_MIGRATE_KEEP_WORK_DIR': 'false',
        }

        with patch.dict(os.environ, env_vars):
            config = Config.from_env()

        assert config.destination.url == 'https://dest.gitlab.com'
        assert config.destination.token == 'dest-token'
        assert config.scheduler.migration_concurrency == 6
        assert config.storage.work_dir == '/srv/work'
        assert config.runner.keep_work_dir is False

    def test_template_round_trip(self, tmp_path):
        """Test the generated template loads and saves."""
        path = tmp_path / 'config.yaml'
        Config.create_template(str(path))

        config = Config.from_file(str(path))
        assert config.destination.url == 'https://gitlab.example.com'
        assert config.scheduler.migration_concurrency == 2

        config.scheduler.migration_concurrency = 7
        config.to_file(str(path))
        assert Config.from_file(str(path)).scheduler.migration_concurrency == 7

    def test_invalid_config_file(self):
        """Test handling of invalid configuration file."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write('invalid: yaml: content:')
            f.flush()

            try:
                with pytest.raises(Exception):
                    Config.from_file(f.name)
            finally:
                os.unlink(f.name)

    def test_missing_config_file(self):
        """Test handling of missing configuration file."""
        with pytest.raises(FileNotFoundError):
            Config.from_file('/nonexistent/config.yaml')
