"""
Priority job queue with quota-aware admission.

JobQueue holds every non-terminal job and answers "what may run now". Pending
jobs sit in a binary heap keyed by ``(-priority, created_at, seq)``; entries are
invalidated lazily through a per-job token, so status changes never need to
search the heap. A single re-entrant lock makes ``next_eligible``,
``report_outcome``, ``pause``/``resume`` and ``abort_dispatch`` atomic with
respect to one another: a pending job is claimed by at most one caller and only
the claimer may report its outcome.

State machine::

    pending -> running -> completed | pending (retry) | failed | paused
    pending -> paused, running -> paused, paused -> pending
"""

from __future__ import annotations

import heapq
import itertools
import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

from census_ingest.config import LoadingConfig
from census_ingest.domain.models import (
    Clock,
    Job,
    JobOutcome,
    JobStatus,
    OutcomeKind,
    utc_now,
)
from census_ingest.errors import (
    DuplicateJob,
    InvalidJob,
    InvalidTransition,
    JobNotFound,
)
from census_ingest.planning import call_cost
from census_ingest.scheduling.quota import QuotaTracker
from census_ingest.scheduling.retry import RetryPolicy
from census_ingest.utils.logging import get_logger

log = get_logger(__name__)

_HeapEntry = Tuple[int, datetime, int, str]


class JobQueue:
    def __init__(
        self,
        config: LoadingConfig,
        quota: Optional[QuotaTracker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self._clock = clock or utc_now
        self.quota = quota or QuotaTracker(config.api_rate_limit, clock=self._clock)
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)

        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._finished: Dict[str, Job] = {}
        self._heap: List[_HeapEntry] = []
        self._tokens: Dict[str, int] = {}
        self._seq = itertools.count()
        self._in_flight: Set[str] = set()
        self._admitted_at: Dict[str, datetime] = {}
        self._wait_seconds: Dict[str, float] = {}

    # -- admission ---------------------------------------------------------

    def _check(self, job: Job) -> None:
        if not 0 <= job.priority <= 100:
            raise InvalidJob(
                f"priority must be between 0 and 100, got {job.priority}", job_id=job.id
            )
        if not job.variables:
            raise InvalidJob("variables must not be empty", job_id=job.id)
        if job.max_retries < 0:
            raise InvalidJob(
                f"max_retries must be non-negative, got {job.max_retries}", job_id=job.id
            )
        if not 0 <= job.retry_count <= job.max_retries:
            raise InvalidJob(
                f"retry_count {job.retry_count} outside [0, {job.max_retries}]", job_id=job.id
            )
        for name in ("estimated_records", "processed_records", "error_count"):
            if getattr(job, name) < 0:
                raise InvalidJob(f"{name} must be non-negative", job_id=job.id)
        cost = self.call_cost(job)
        ceiling = min(self.quota.limits.burst_limit, self.quota.daily_budget)
        if cost > ceiling:
            raise InvalidJob(
                f"call cost {cost} exceeds the largest grantable reservation ({ceiling})",
                job_id=job.id,
                details={"cost": cost, "ceiling": ceiling},
            )

    def add(self, job: Job) -> Job:
        """Admit a job as pending; raises InvalidJob or DuplicateJob."""
        self._check(job)
        with self._lock:
            if job.id in self._jobs or job.id in self._finished:
                raise DuplicateJob(f"Job {job.id} already exists in queue", job_id=job.id)
            job.status = JobStatus.PENDING
            job.not_before = None
            job.reserved_cost = 0
            self._jobs[job.id] = job
            self._admitted_at[job.id] = self._clock()
            self._push(job)

        log.info(
            f"Added job {job.id} with priority {job.priority}",
            extra={"job_id": job.id, "priority": job.priority, "level": job.geography.level.value},
        )
        return job

    def _push(self, job: Job) -> None:
        seq = next(self._seq)
        self._tokens[job.id] = seq
        created = job.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        heapq.heappush(self._heap, (-job.priority, created, seq, job.id))

    # -- dispatch ----------------------------------------------------------

    def call_cost(self, job: Job) -> int:
        return call_cost(job, self.config)

    def next_eligible(self, n: int) -> List[Job]:
        """
        Claim up to ``n`` runnable jobs, highest priority then oldest first.

        A job is runnable when pending, past its retry delay and covered by the
        API quota; its call cost is reserved as part of the claim. Never blocks:
        returns fewer jobs (possibly none) when fewer are runnable.
        """
        if n <= 0:
            return []

        selected: List[Job] = []
        deferred: List[_HeapEntry] = []
        with self._lock:
            now = self._clock()
            while self._heap and len(selected) < n:
                entry = heapq.heappop(self._heap)
                job_id, seq = entry[3], entry[2]
                if self._tokens.get(job_id) != seq:
                    continue
                job = self._jobs.get(job_id)
                if job is None or job.status is not JobStatus.PENDING:
                    self._tokens.pop(job_id, None)
                    continue
                if job_id in self._in_flight:
                    # Resumed while its previous dispatch is still running.
                    deferred.append(entry)
                    continue
                if job.not_before is not None and job.not_before > now:
                    deferred.append(entry)
                    continue
                cost = self.call_cost(job)
                if not self.quota.reserve(cost):
                    log.debug(
                        "Quota denied admission",
                        extra={"job_id": job_id, "cost": cost},
                    )
                    deferred.append(entry)
                    continue

                del self._tokens[job_id]
                job.status = JobStatus.RUNNING
                job.started_at = now
                job.not_before = None
                job.reserved_cost = cost
                self._in_flight.add(job_id)
                if job_id not in self._wait_seconds:
                    admitted = self._admitted_at.get(job_id, now)
                    self._wait_seconds[job_id] = (now - admitted).total_seconds()
                selected.append(job)

            for entry in deferred:
                heapq.heappush(self._heap, entry)

        if selected:
            log.debug(
                f"Retrieved {len(selected)} jobs from queue for processing",
                extra={"job_ids": [job.id for job in selected]},
            )
        return selected

    def abort_dispatch(self, job_id: str) -> Job:
        """Hand back a claimed job whose upstream call was never sent."""
        with self._lock:
            job = self._require_active(job_id)
            if job_id not in self._in_flight:
                raise InvalidTransition(f"Job {job_id} has no dispatch in flight", job_id=job_id)
            self._in_flight.discard(job_id)
            self.quota.release(job.reserved_cost)
            job.reserved_cost = 0
            if job.status is JobStatus.RUNNING:
                job.status = JobStatus.PENDING
            if job.status is JobStatus.PENDING:
                self._push(job)

        log.info("Dispatch aborted before send", extra={"job_id": job_id, "status": job.status.value})
        return job

    def report_outcome(self, job_id: str, outcome: JobOutcome) -> Job:
        """
        Record the outcome of a claimed job's dispatch.

        Reports for an already terminal job are ignored, so the terminal state is
        idempotent under repeated reports.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                finished = self._finished.get(job_id)
                if finished is None:
                    raise JobNotFound(f"Job {job_id} not found in queue", job_id=job_id)
                log.debug(
                    "Outcome ignored for terminal job",
                    extra={"job_id": job_id, "status": finished.status.value},
                )
                return finished
            if job_id not in self._in_flight:
                raise InvalidTransition(f"Job {job_id} has no dispatch in flight", job_id=job_id)

            self._in_flight.discard(job_id)
            now = self._clock()
            paused = job.status is JobStatus.PAUSED
            job.reserved_cost = 0
            if outcome.validation is not None:
                job.last_validation = outcome.validation

            if outcome.kind is OutcomeKind.FATAL_ERROR:
                job.error_count += 1
                job.last_error = outcome.error
                self._finish(job, JobStatus.FAILED, now)
            elif outcome.retryable:
                job.error_count += 1
                job.last_error = outcome.error or self._describe_validation(outcome)
                self._retry_or_fail(job, now, paused)
            else:
                job.processed_records += outcome.records_processed
                self._finish(job, JobStatus.COMPLETED, now)

        self._log_outcome(job, outcome)
        return job

    def _retry_or_fail(self, job: Job, now: datetime, paused: bool) -> None:
        if not self.retry_policy.should_retry(job.retry_count, job.max_retries):
            self._finish(job, JobStatus.FAILED, now)
            return
        not_before = self.retry_policy.not_before(now, job.retry_count)
        job.retry_count += 1
        job.processed_records = 0
        if paused:
            job.not_before = None
            return
        job.not_before = not_before
        job.status = JobStatus.PENDING
        self._push(job)

    def _finish(self, job: Job, status: JobStatus, now: datetime) -> None:
        job.status = status
        job.completed_at = now
        job.not_before = None
        self._tokens.pop(job.id, None)
        self._jobs.pop(job.id, None)
        self._finished[job.id] = job

    @staticmethod
    def _describe_validation(outcome: JobOutcome) -> Optional[str]:
        if outcome.validation is None:
            return None
        return f"validation score {outcome.validation.score:.3f} below accuracy threshold"

    def _log_outcome(self, job: Job, outcome: JobOutcome) -> None:
        extra = {
            "job_id": job.id,
            "outcome": outcome.kind.value,
            "status": job.status.value,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
        }
        if job.status is JobStatus.COMPLETED:
            log.info(f"Job {job.id} marked as completed", extra=extra)
        elif job.status is JobStatus.FAILED:
            log.warning(f"Job {job.id} marked as failed: {job.last_error}", extra=extra)
        else:
            extra["not_before"] = job.not_before
            log.info(
                f"Job {job.id} scheduled for retry ({job.retry_count}/{job.max_retries})",
                extra=extra,
            )

    # -- operator control --------------------------------------------------

    def _require_active(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        if job_id in self._finished:
            raise InvalidTransition(
                f"Job {job_id} is {self._finished[job_id].status.value}", job_id=job_id
            )
        raise JobNotFound(f"Job {job_id} not found in queue", job_id=job_id)

    def pause(self, job_id: str) -> Job:
        with self._lock:
            job = self._require_active(job_id)
            if job.status is JobStatus.PAUSED:
                return job
            job.status = JobStatus.PAUSED
            self._tokens.pop(job_id, None)
        log.info(f"Job {job_id} paused", extra={"job_id": job_id})
        return job

    def resume(self, job_id: str) -> Job:
        with self._lock:
            job = self._require_active(job_id)
            if job.status is not JobStatus.PAUSED:
                raise InvalidTransition(
                    f"Job {job_id} is {job.status.value}, not paused", job_id=job_id
                )
            job.status = JobStatus.PENDING
            self._push(job)
        log.info(f"Job {job_id} resumed", extra={"job_id": job_id})
        return job

    # -- inspection --------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id) or self._finished.get(job_id)

    def is_claimed(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._in_flight

    def jobs_by_status(self, status: JobStatus) -> List[Job]:
        with self._lock:
            pool = self._finished if status.terminal else self._jobs
            return [job for job in pool.values() if job.status is status]

    def is_drained(self) -> bool:
        """True when nothing is pending, running or in flight (paused jobs wait)."""
        with self._lock:
            if self._in_flight:
                return False
            return not any(
                job.status in (JobStatus.PENDING, JobStatus.RUNNING)
                for job in self._jobs.values()
            )

    def is_starved(self) -> bool:
        """
        True when nothing is in flight and no pending job fits the quota left today.

        Jobs waiting out a retry delay still count as runnable when their cost
        fits; the burst window always frees up, the daily budget only at reset.
        """
        with self._lock:
            if self._in_flight:
                return False
            remaining = self.quota.remaining()
            return not any(
                job.status is JobStatus.PENDING and self.call_cost(job) <= remaining
                for job in self._jobs.values()
            )

    def cleanup(self, older_than: timedelta) -> int:
        """Forget finished jobs that completed before ``now - older_than``."""
        with self._lock:
            cutoff = self._clock() - older_than
            stale = [
                job_id
                for job_id, job in self._finished.items()
                if job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in stale:
                del self._finished[job_id]
                self._admitted_at.pop(job_id, None)
                self._wait_seconds.pop(job_id, None)
        if stale:
            log.info(f"Cleaned up {len(stale)} old jobs from queue")
        return len(stale)

    def metrics(self) -> dict:
        """Point-in-time snapshot; never mutates queue state."""
        with self._lock:
            active = list(self._jobs.values())
            finished = list(self._finished.values())
            statuses = Counter(job.status for job in active + finished)
            depth = Counter(
                job.priority for job in active if job.status is JobStatus.PENDING
            )
            waits = [
                self._wait_seconds[job.id]
                for job in finished
                if job.status is JobStatus.COMPLETED and job.id in self._wait_seconds
            ]
            return {
                "totalJobs": len(active) + len(finished),
                "pendingJobs": statuses[JobStatus.PENDING],
                "runningJobs": statuses[JobStatus.RUNNING],
                "pausedJobs": statuses[JobStatus.PAUSED],
                "completedJobs": statuses[JobStatus.COMPLETED],
                "failedJobs": statuses[JobStatus.FAILED],
                "inFlight": len(self._in_flight),
                "averageWaitSeconds": sum(waits) / len(waits) if waits else 0.0,
                "queueDepthByPriority": dict(sorted(depth.items(), reverse=True)),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs or job_id in self._finished


__all__ = ["JobQueue"]
