"""Admission control for concurrent compression jobs."""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from ..errors import ServerBusyError

logger = logging.getLogger(__name__)


class ResourceManager:
    """Counts active jobs against a fixed ceiling.

    Rejection is immediate: there is no queue, retry or fairness policy.
    """

    def __init__(self, max_concurrent_jobs: int = 20):
        """Initialize manager.

        Args:
            max_concurrent_jobs: Jobs allowed to run at once
        """
        if max_concurrent_jobs < 1:
            raise ValueError(f"max_concurrent_jobs must be >= 1, got {max_concurrent_jobs}")
        self.max_concurrent_jobs = max_concurrent_jobs
        self._lock = threading.Lock()
        self._active = 0
        self._total = 0
        self._rejected = 0

    @property
    def active_jobs(self) -> int:
        with self._lock:
            return self._active

    def can_admit(self) -> bool:
        """Check for a free slot without reserving it."""
        with self._lock:
            return self._active < self.max_concurrent_jobs

    def begin(self) -> None:
        """Reserve a slot.

        Raises:
            ServerBusyError: If every slot is taken; nothing is reserved
        """
        with self._lock:
            if self._active >= self.max_concurrent_jobs:
                self._rejected += 1
                active = self._active
            else:
                self._active += 1
                self._total += 1
                return

        logger.warning(f"Rejecting job: {active}/{self.max_concurrent_jobs} slots busy")
        raise ServerBusyError("Server busy. Please try again later.")

    def end(self) -> None:
        """Release a slot."""
        with self._lock:
            if self._active > 0:
                self._active -= 1

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold a slot for the duration of the block.

        The slot is released however the block exits.
        """
        self.begin()
        try:
            yield
        finally:
            self.end()

    def get_stats(self) -> dict:
        """Get job counters."""
        with self._lock:
            return {
                'active_jobs': self._active,
                'total_jobs_processed': self._total,
                'rejected_jobs': self._rejected,
                'max_concurrent_jobs': self.max_concurrent_jobs,
            }
