"""Per-record working directories."""

import shutil
from pathlib import Path
from typing import List

from loguru import logger

from ..svn.runner import remove_lock_files

REPO_DIRNAME = 'repo'


class WorkspaceManager:
    """Owns ``<work_dir>/<record_id>`` trees.

    Each record gets one directory holding the git-svn working copy in
    ``repo/`` plus the generated authors files next to it. Only the job that
    currently holds the record touches its directory.
    """

    def __init__(self, work_dir: str):
        self.root = Path(work_dir)
        self.logger = logger.bind(component='WorkspaceManager')

    def path_for(self, record_id: str) -> Path:
        return self.root / record_id

    def repo_path(self, record_id: str) -> Path:
        return self.path_for(record_id) / REPO_DIRNAME

    def ensure(self, record_id: str) -> Path:
        """Create the record directory and return the working copy path."""
        path = self.path_for(record_id)
        path.mkdir(parents=True, exist_ok=True)
        return path / REPO_DIRNAME

    def exists(self, record_id: str) -> bool:
        return self.path_for(record_id).exists()

    def is_resumable(self, record_id: str) -> bool:
        """True if the working copy can continue an interrupted fetch.

        git-svn keeps its revision map under ``.git/svn``; without it a fetch
        would start over even though ``.git`` exists.
        """
        git_dir = self.repo_path(record_id) / '.git'
        return git_dir.is_dir() and (git_dir / 'svn').is_dir() and (
            git_dir / 'HEAD'
        ).exists()

    def remove_lock_files(self, record_id: str) -> List[Path]:
        return remove_lock_files(self.repo_path(record_id))

    def discard(self, record_id: str) -> bool:
        """Delete the record's directory tree.

        Returns:
            True if something was removed
        """
        path = self.path_for(record_id)
        if not path.exists():
            return False
        shutil.rmtree(path)
        self.logger.info(f'Removed working directory {path}')
        return True
