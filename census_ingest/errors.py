"""
Error taxonomy for the Census ingest engine.

Every failure the core can surface derives from CensusIngestError. Each class
declares whether the condition is retryable so the Scheduler can map exceptions
raised by collaborators (providers, sinks) onto job outcomes without inspecting
messages.

    Submission errors   InvalidJob, DuplicateJob        never enter the queue
    Lookup/state errors JobNotFound, InvalidTransition  operator mistakes
    Admission           QuotaExceeded                   job stays pending
    Execution           TransientError, FatalError      provider/sink failures
    Quality             ValidationFailure               batch below threshold
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:  # pragma: no cover
    from census_ingest.domain.models import ValidationResult


class CensusIngestError(Exception):
    """Base exception for all engine errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.job_id = job_id
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "job_id": self.job_id,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class InvalidJob(CensusIngestError):
    """Malformed job definition rejected at submission."""


class DuplicateJob(CensusIngestError):
    """A job with the same id is already known to the queue."""


class JobNotFound(CensusIngestError):
    """No job with the given id is known to the queue."""


class InvalidTransition(CensusIngestError):
    """Requested status change is not allowed from the job's current status."""


class QuotaExceeded(CensusIngestError):
    """API budget cannot cover the requested call cost right now."""

    retryable = True


class TransientError(CensusIngestError):
    """Retryable upstream, network or storage failure."""

    retryable = True


class FatalError(CensusIngestError):
    """Non-retryable failure; the job fails permanently."""


class ValidationFailure(CensusIngestError):
    """Batch quality score fell below the accuracy threshold."""

    retryable = True

    def __init__(
        self,
        message: str,
        result: "ValidationResult",
        job_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, job_id=job_id, details={"score": result.score})
        self.result = result


__all__ = [
    "CensusIngestError",
    "InvalidJob",
    "DuplicateJob",
    "JobNotFound",
    "InvalidTransition",
    "QuotaExceeded",
    "TransientError",
    "FatalError",
    "ValidationFailure",
]
