"""
Domain models for the Census ingest engine.

Jobs are mutable pydantic models owned by the JobQueue; validation results and
issues are produced per batch attempt and handed to collaborators untouched.
Range invariants on Job (priority, variables, retries) are enforced by
JobQueue.add so that a malformed definition surfaces as InvalidJob instead of a
pydantic error at construction time.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GeographyLevel(str, Enum):
    NATION = "nation"
    STATE = "state"
    METRO = "metro"
    COUNTY = "county"
    PLACE = "place"
    ZCTA = "zcta"
    TRACT = "tract"
    BLOCK_GROUP = "block_group"


class JobKind(str, Enum):
    BULK = "bulk"
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class IssueType(str, Enum):
    MISSING_DATA = "missing_data"
    INCONSISTENT_GEOGRAPHY = "inconsistent_geography"
    INVALID_RANGE = "invalid_range"
    OUTLIER = "outlier"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return {"error": 3, "warning": 2, "info": 1}[self.value]


class GeographySpec(BaseModel):
    """Statistical areas to fetch: a level plus explicit codes (empty = all)."""

    level: GeographyLevel
    codes: Set[str] = Field(default_factory=set)

    def sorted_codes(self) -> List[str]:
        return sorted(self.codes)


class ValidationIssue(BaseModel):
    type: IssueType
    severity: Severity
    message: str
    record_count: int = Field(1, ge=0)
    sample_records: List[int] = Field(
        default_factory=list, description="Indices of the first offending records."
    )


class ValidationMetrics(BaseModel):
    total_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    missing_data: int = 0
    outliers: int = 0


class ValidationResult(BaseModel):
    passed: bool
    score: float = Field(..., ge=0.0, le=1.0)
    issues: List[ValidationIssue] = Field(default_factory=list)
    metrics: ValidationMetrics = Field(default_factory=ValidationMetrics)

    model_config = {"frozen": True}


class Job(BaseModel):
    """
    One ingestion unit: a geography selection and the variables to fetch for it.

    Status and counters are written only by the JobQueue (and through it, the
    Scheduler); submitters build a Job and hand it to ``JobQueue.add``.
    """

    id: str
    kind: JobKind = JobKind.BULK
    priority: int
    status: JobStatus = JobStatus.PENDING
    geography: GeographySpec
    variables: List[str]
    dataset: str = "acs5"
    year: str = "2022"
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    not_before: Optional[datetime] = None
    estimated_records: int = 0
    processed_records: int = 0
    error_count: int = 0
    retry_count: int = 0
    max_retries: int = 3
    reserved_cost: int = 0
    last_error: Optional[str] = None
    last_validation: Optional[ValidationResult] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


class JobOutcome(BaseModel):
    """Result of one dispatch attempt, reported back to the JobQueue."""

    kind: OutcomeKind
    records_processed: int = 0
    validation: Optional[ValidationResult] = None
    error: Optional[str] = None

    model_config = {"frozen": True}

    @classmethod
    def success(
        cls, records_processed: int = 0, validation: Optional[ValidationResult] = None
    ) -> "JobOutcome":
        return cls(
            kind=OutcomeKind.SUCCESS,
            records_processed=records_processed,
            validation=validation,
        )

    @classmethod
    def partial_failure(cls, validation: ValidationResult) -> "JobOutcome":
        return cls(kind=OutcomeKind.PARTIAL_FAILURE, validation=validation)

    @classmethod
    def transient_error(cls, error: str) -> "JobOutcome":
        return cls(kind=OutcomeKind.TRANSIENT_ERROR, error=error)

    @classmethod
    def fatal_error(cls, error: str) -> "JobOutcome":
        return cls(kind=OutcomeKind.FATAL_ERROR, error=error)

    @property
    def retryable(self) -> bool:
        if self.kind is OutcomeKind.TRANSIENT_ERROR:
            return True
        # A partial failure whose batch nevertheless passed is accepted as-is.
        return self.kind is OutcomeKind.PARTIAL_FAILURE and not (
            self.validation is not None and self.validation.passed
        )


__all__ = [
    "Clock",
    "utc_now",
    "GeographyLevel",
    "JobKind",
    "JobStatus",
    "IssueType",
    "Severity",
    "GeographySpec",
    "ValidationIssue",
    "ValidationMetrics",
    "ValidationResult",
    "Job",
    "OutcomeKind",
    "JobOutcome",
]
