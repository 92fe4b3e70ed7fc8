"""Retry policy for queued jobs."""
from __future__ import annotations

from dataclasses import dataclass

from nuggets.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: the n-th retry waits ``backoff_seconds * 2**(n-1)``.

    With the defaults a job runs at most 3 times, waiting 2s then 4s.
    """

    max_attempts: int = 3
    backoff_seconds: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(max_attempts=settings.job_max_attempts, backoff_seconds=settings.job_backoff_seconds)

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt ``attempt`` (1-based)."""
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
