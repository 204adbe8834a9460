"""
Scheduling package for the Census ingest engine.

Exports the priority queue and the admission components it composes: quota
tracking against the upstream API budget and the retry backoff policy.
"""

from census_ingest.scheduling.job_queue import JobQueue
from census_ingest.scheduling.quota import QuotaTracker
from census_ingest.scheduling.retry import RetryPolicy

__all__ = [
    "JobQueue",
    "QuotaTracker",
    "RetryPolicy",
]
