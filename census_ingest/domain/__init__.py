"""
Domain package for the Census ingest engine.

Exports the job, outcome and validation models shared by the queue, the
validation engine and the scheduler. Keep this package free of I/O.
"""

from census_ingest.domain.models import (
    Clock,
    GeographyLevel,
    GeographySpec,
    IssueType,
    Job,
    JobKind,
    JobOutcome,
    JobStatus,
    OutcomeKind,
    Severity,
    ValidationIssue,
    ValidationMetrics,
    ValidationResult,
    utc_now,
)

__all__ = [
    "Clock",
    "GeographyLevel",
    "GeographySpec",
    "IssueType",
    "Job",
    "JobKind",
    "JobOutcome",
    "JobStatus",
    "OutcomeKind",
    "Severity",
    "ValidationIssue",
    "ValidationMetrics",
    "ValidationResult",
    "utc_now",
]
