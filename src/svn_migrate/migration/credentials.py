"""Session cache for source repository credentials."""

import time
from typing import Callable, Dict, Optional, Tuple

from loguru import logger

from ..models.job import SvnCredentials


class CredentialCache:
    """In-memory SVN credentials keyed by source URL, expiring after ``ttl``.

    Nothing here is ever written to disk. Once an entry expires the operator
    has to supply the credentials again.
    """

    def __init__(self, ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[SvnCredentials, float]] = {}

    @staticmethod
    def _key(url: str) -> str:
        return url.rstrip('/')

    def put(self, url: str, credentials: SvnCredentials) -> None:
        self._entries[self._key(url)] = (credentials, self._clock() + self.ttl)

    def get(self, url: str) -> Optional[SvnCredentials]:
        entry = self._entries.get(self._key(url))
        if entry is None:
            return None
        credentials, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[self._key(url)]
            logger.debug(f'Cached SVN credentials for {url} expired')
            return None
        return credentials

    def discard(self, url: str) -> None:
        self._entries.pop(self._key(url), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
