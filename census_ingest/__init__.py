"""
Census ingest engine - job scheduling and quality gating for rate-limited
statistical data loads.

This package provides the core that sits between a bulk loader and the
upstream statistics API:

- A priority job queue with quota-aware admission
- Exponential retry backoff with pause/resume operator control
- A daily/burst API quota tracker
- A rule-driven validation engine that scores every fetched batch
- A threaded scheduler that drains the queue through pluggable providers
  and result sinks
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from census_ingest.config import LoadingConfig, Settings, build_loading_config, get_settings
from census_ingest.domain.models import (
    GeographyLevel,
    GeographySpec,
    Job,
    JobKind,
    JobOutcome,
    JobStatus,
    ValidationResult,
)
from census_ingest.errors import CensusIngestError
from census_ingest.planning import plan_jobs
from census_ingest.scheduler import RunSummary, Scheduler
from census_ingest.scheduling import JobQueue, QuotaTracker, RetryPolicy
from census_ingest.utils.logging import configure_logging, get_logger
from census_ingest.validation import ValidationEngine

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "LoadingConfig",
    "Settings",
    "build_loading_config",
    "get_settings",
    # Domain
    "GeographyLevel",
    "GeographySpec",
    "Job",
    "JobKind",
    "JobOutcome",
    "JobStatus",
    "ValidationResult",
    "CensusIngestError",
    # Core
    "JobQueue",
    "QuotaTracker",
    "RetryPolicy",
    "ValidationEngine",
    "Scheduler",
    "RunSummary",
    "plan_jobs",
    # Logging
    "configure_logging",
    "get_logger",
]
