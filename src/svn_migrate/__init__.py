"""SVN Migration Tool

Replays Subversion repository history into GitLab projects through a
resumable, concurrency-bounded job pipeline.
"""

__version__ = '0.1.0'
__author__ = 'SVN Migration Team'
__email__ = 'team@example.com'

from .cli.main import main

__all__ = ['main']
