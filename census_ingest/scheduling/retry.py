"""Exponential backoff policy for re-admitting failed jobs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from census_ingest.config import LoadingConfig


@dataclass(frozen=True)
class RetryPolicy:
    """
    ``next_delay(n) = retry_delay_ms * 2**n`` capped at ``max_delay_ms``.

    ``n`` is the number of retries already consumed when the failure is
    reported, so the first retry waits exactly ``retry_delay_ms``.
    """

    retry_delay_ms: int = 5_000
    max_delay_ms: int = 300_000

    @classmethod
    def from_config(cls, config: LoadingConfig) -> "RetryPolicy":
        return cls(retry_delay_ms=config.retry_delay_ms, max_delay_ms=config.max_retry_delay_ms)

    def next_delay(self, retry_count: int) -> timedelta:
        if retry_count < 0:
            raise ValueError(f"retry_count must be non-negative, got {retry_count}")
        delay_ms = min(self.retry_delay_ms * 2**retry_count, self.max_delay_ms)
        return timedelta(milliseconds=delay_ms)

    @staticmethod
    def should_retry(retry_count: int, max_retries: int) -> bool:
        return retry_count < max_retries

    def not_before(self, now: datetime, retry_count: int) -> datetime:
        return now + self.next_delay(retry_count)


__all__ = ["RetryPolicy"]
