"""
Read-path retry helper. Writes are never retried.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from targeting.errors import RepositoryUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadRetry:
    """Re-run a repository read with exponential backoff on `RepositoryUnavailable`."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self._sleep = sleep

    def __call__(self, read: Callable[[], T], label: str = "read") -> T:
        for attempt in range(self.max_attempts):
            try:
                return read()
            except RepositoryUnavailable as exc:
                if attempt >= self.max_attempts - 1:
                    logger.error("%s failed after %s attempts: %s", label, self.max_attempts, exc)
                    raise
                wait_time = self.backoff_seconds * (2**attempt)
                logger.warning(
                    "%s unavailable (attempt %s/%s), retrying in %.2fs: %s",
                    label,
                    attempt + 1,
                    self.max_attempts,
                    wait_time,
                    exc,
                )
                self._sleep(wait_time)
        raise RepositoryUnavailable(f"{label} failed after {self.max_attempts} attempts")
