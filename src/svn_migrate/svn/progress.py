"""Progress extraction from git-svn output."""

import math
import re
import time
from typing import Callable, Optional

from ..models.migration import ProgressInfo

# git svn fetch prints one line per imported revision:
#   r42 = 4f1c0e9d... (refs/remotes/svn/trunk)
REVISION_LINE = re.compile(r'^\s*r(\d+)\s*=\s*[0-9a-f]{7,40}\b')

MAX_ESTIMATED_PERCENTAGE = 99.0


def parse_revision(line: str) -> Optional[int]:
    """Revision number from a git-svn progress line, or None."""
    match = REVISION_LINE.match(line)
    return int(match.group(1)) if match else None


class ProgressParser:
    """Turns a stream of output lines into ``ProgressInfo`` snapshots.

    When the head revision is known the percentage is the position of the
    last replayed revision between the checkpoint and the head. Otherwise the
    percentage follows an elapsed-time curve that approaches but never
    reaches 100 and is flagged as estimated.
    """

    def __init__(
        self,
        checkpoint: Optional[int] = None,
        expected_head: Optional[int] = None,
        estimated_rate: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.baseline = checkpoint or 0
        self.expected_head = expected_head
        self.estimated_rate = estimated_rate
        self._clock = clock
        self._started = clock()
        self.current = 0
        self.last_revision: Optional[int] = None

    @property
    def total(self) -> Optional[int]:
        if self.expected_head is None or self.expected_head <= self.baseline:
            return None
        return self.expected_head - self.baseline

    def feed(self, line: str) -> Optional[ProgressInfo]:
        """Consume one line; returns a snapshot if it was a revision line."""
        revision = parse_revision(line)
        if revision is None:
            return None
        self.current += 1
        if self.last_revision is None or revision > self.last_revision:
            self.last_revision = revision
        return self.snapshot()

    def snapshot(self) -> ProgressInfo:
        total = self.total
        if total and self.last_revision is not None:
            done = max(0, self.last_revision - self.baseline)
            percentage = min(100.0, 100.0 * done / total)
            estimated = False
        else:
            elapsed = max(0.0, self._clock() - self._started)
            # ~63% after 100 / estimated_rate seconds
            scale = 100.0 / self.estimated_rate
            percentage = MAX_ESTIMATED_PERCENTAGE * (1 - math.exp(-elapsed / scale))
            estimated = True
        return ProgressInfo(
            current=self.current,
            total=total,
            percentage=round(percentage, 1),
            is_estimated=estimated,
            revision=self.last_revision,
        )


class ProgressThrottle:
    """Lets updates through at most once per ``interval`` seconds."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        return True
