"""Configuration management for SVN Migration Tool."""

from typing import Optional, Dict, Any
from pathlib import Path
import os

from pydantic import BaseModel, Field, validator
import yaml
from dotenv import load_dotenv


MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class GitLabInstanceConfig(BaseModel):
    """Configuration for the destination GitLab instance."""

    url: str = Field(..., description='GitLab instance URL')
    token: Optional[str] = Field(default=None, description='Personal access token')
    oauth_token: Optional[str] = Field(default=None, description='OAuth access token')
    api_version: str = Field(default='v4', description='GitLab API version')
    timeout: int = Field(default=30, description='Request timeout in seconds')

    @validator('url')
    def validate_url(cls, v):
        """Validate GitLab URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @validator('oauth_token', always=True)
    def validate_auth_complete(cls, v, values):
        """Ensure at least one authentication method is provided."""
        token = values.get('token')
        if not token and not v:
            raise ValueError('Either token or oauth_token must be provided')
        return v

    @validator('timeout')
    def validate_timeout(cls, v):
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError('Timeout must be positive')
        return v


class SchedulerConfig(BaseModel):
    """Job queue concurrency settings."""

    migration_concurrency: int = Field(
        default=2, description='Concurrent initial migrations'
    )
    sync_concurrency: int = Field(default=3, description='Concurrent incremental syncs')

    @validator('migration_concurrency', 'sync_concurrency')
    def validate_concurrency(cls, v):
        """Validate concurrency limits are within bounds."""
        if not MIN_CONCURRENCY <= v <= MAX_CONCURRENCY:
            raise ValueError(
                f'Concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}'
            )
        return v


class StorageConfig(BaseModel):
    """Migration record store and working directory settings."""

    database_url: str = Field(
        default='sqlite:///svn-migrate.db', description='SQLAlchemy database URL'
    )
    work_dir: str = Field(
        default='/tmp/svn-migrations',
        description='Root directory holding one working copy per migration',
    )

    @validator('work_dir')
    def validate_work_dir(cls, v):
        """Validate working directory path."""
        if not Path(v).is_absolute():
            raise ValueError('work_dir must be an absolute path')
        return v


class RunnerConfig(BaseModel):
    """git-svn process settings."""

    git_binary: str = Field(default='git', description='git executable')
    svn_binary: str = Field(default='svn', description='svn executable')
    grace_period: float = Field(
        default=10.0, description='Seconds between SIGTERM and SIGKILL'
    )
    progress_interval: float = Field(
        default=0.25, description='Minimum seconds between progress updates'
    )
    tail_lines: int = Field(
        default=50, description='Output lines attached to process errors'
    )
    default_branch: str = Field(
        default='main', description='Destination branch receiving trunk'
    )
    fallback_email_domain: str = Field(
        default='svn.local', description='Email domain for unmapped authors'
    )
    keep_work_dir: bool = Field(
        default=True,
        description='Keep working copies after success so syncs stay incremental',
    )
    estimated_revision_rate: float = Field(
        default=2.0,
        description='Assumed revisions per second when the total is unknown',
    )

    @validator('grace_period', 'progress_interval', 'estimated_revision_rate')
    def validate_positive(cls, v):
        """Validate timing values are positive."""
        if v <= 0:
            raise ValueError('Value must be positive')
        return v

    @validator('tail_lines')
    def validate_tail_lines(cls, v):
        """Validate tail size is positive."""
        if v <= 0:
            raise ValueError('tail_lines must be positive')
        return v


class RetryConfig(BaseModel):
    """Bounded exponential backoff for single remote calls."""

    base_delay: float = Field(default=1.0, description='First retry delay in seconds')
    max_attempts: int = Field(default=4, description='Total attempts per call')
    max_delay: float = Field(default=30.0, description='Upper bound for one delay')

    @validator('max_attempts')
    def validate_attempts(cls, v):
        """Validate attempt count."""
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v

    @validator('base_delay', 'max_delay')
    def validate_delay(cls, v):
        """Validate delays are not negative."""
        if v < 0:
            raise ValueError('Delays cannot be negative')
        return v


class CredentialsConfig(BaseModel):
    """Session credential cache settings."""

    ttl: int = Field(default=3600, description='Seconds SVN credentials stay cached')

    @validator('ttl')
    def validate_ttl(cls, v):
        """Validate TTL is positive."""
        if v <= 0:
            raise ValueError('Credential TTL must be positive')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: str = Field(
        default='{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}',
        description='Log format',
    )

    @validator('level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Main configuration class for SVN Migration Tool."""

    destination: GitLabInstanceConfig = Field(
        ..., description='Destination GitLab instance'
    )
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig, description='Job queue settings'
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig, description='Record store settings'
    )
    runner: RunnerConfig = Field(
        default_factory=RunnerConfig, description='git-svn process settings'
    )
    retry: RetryConfig = Field(
        default_factory=RetryConfig, description='Remote call retry policy'
    )
    credentials: CredentialsConfig = Field(
        default_factory=CredentialsConfig, description='Credential cache settings'
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description='Logging settings'
    )

    class Config:
        """Pydantic configuration."""

        extra = 'forbid'  # Don't allow extra fields

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config_data = {
            'destination': {
                'url': os.getenv('GITLAB_URL'),
                'token': os.getenv('GITLAB_TOKEN'),
                'oauth_token': os.getenv('GITLAB_OAUTH_TOKEN'),
                'timeout': int(os.getenv('GITLAB_TIMEOUT', 30)),
            },
            'scheduler': {
                'migration_concurrency': int(
                    os.getenv('MAX_CONCURRENT_MIGRATIONS', 2)
                ),
                'sync_concurrency': int(os.getenv('MAX_CONCURRENT_SYNCS', 3)),
            },
            'storage': {
                'database_url': os.getenv('SVN_MIGRATE_DATABASE_URL'),
                'work_dir': os.getenv('SVN_MIGRATE_WORK_DIR'),
            },
            'runner': {
                'git_binary': os.getenv('GIT_BINARY'),
                'svn_binary': os.getenv('SVN_BINARY'),
                'default_branch': os.getenv('GIT_DEFAULT_BRANCH'),
                'keep_work_dir': os.getenv('SVN_MIGRATE_KEEP_WORK_DIR', 'true').lower()
                == 'true',
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        # Remove None values
        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                self.dict(), f, default_flow_style=False, indent=2, sort_keys=False
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'destination': {
                'url': 'https://gitlab.example.com',
                'token': 'your-personal-access-token',
                'api_version': 'v4',
                'timeout': 30,
            },
            'scheduler': {
                'migration_concurrency': 2,
                'sync_concurrency': 3,
            },
            'storage': {
                'database_url': 'sqlite:///svn-migrate.db',
                'work_dir': '/tmp/svn-migrations',
            },
            'runner': {
                'git_binary': 'git',
                'svn_binary': 'svn',
                'grace_period': 10.0,
                'progress_interval': 0.25,
                'tail_lines': 50,
                'default_branch': 'main',
                'fallback_email_domain': 'svn.local',
                'keep_work_dir': True,
            },
            'retry': {
                'base_delay': 1.0,
                'max_attempts': 4,
                'max_delay': 30.0,
            },
            'credentials': {
                'ttl': 3600,
            },
            'logging': {
                'level': 'INFO',
                'file': 'svn-migrate.log',
                'format': '{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )
