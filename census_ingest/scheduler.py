"""
Scheduler: the worker pool that drains a JobQueue.

Usage:
    from census_ingest.scheduler import Scheduler

    scheduler = Scheduler(queue, provider=FixtureProvider("fixtures"), sink=MemorySink())
    summary = scheduler.run_until_idle(timeout=60)
    print(summary.as_dict())

Each of ``max_concurrent_jobs`` worker threads claims one job at a time with
``JobQueue.next_eligible(1)``, fetches its batches from the statistics
provider, scores every batch with the ValidationEngine, hands accepted batches
to the result sink and reports exactly one outcome per claim. A worker that
finds nothing eligible waits ``poll_interval`` seconds before asking again.

Exceptions from collaborators map onto outcomes:

    FatalError              -> fatal_error (job fails, no retry)
    TransientError, other   -> transient_error (retry with backoff)
    ValidationFailure       -> partial_failure (retry with backoff)
    sink failure            -> transient_error
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from census_ingest.config import LoadingConfig
from census_ingest.domain.models import Job, JobOutcome, JobStatus, ValidationResult
from census_ingest.errors import FatalError, TransientError, ValidationFailure
from census_ingest.infrastructure.persistence import MemorySink, ResultSink
from census_ingest.monitoring import LoadMonitor
from census_ingest.planning import split_batches
from census_ingest.providers.abstract import BatchSpec, Record, StatisticsProvider
from census_ingest.scheduling.job_queue import JobQueue
from census_ingest.utils.logging import get_logger
from census_ingest.utils.profiler import profile_block
from census_ingest.validation.engine import ValidationEngine

log = get_logger(__name__)


@dataclass
class RunSummary:
    completed: int = 0
    failed: int = 0
    paused: int = 0
    pending: int = 0
    api_calls: int = 0
    records_loaded: int = 0
    duration_seconds: float = 0.0
    timed_out: bool = False

    def as_dict(self) -> dict:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "paused": self.paused,
            "pending": self.pending,
            "api_calls": self.api_calls,
            "records_loaded": self.records_loaded,
            "duration_seconds": round(self.duration_seconds, 2),
            "timed_out": self.timed_out,
        }


class Scheduler:
    def __init__(
        self,
        queue: JobQueue,
        provider: StatisticsProvider,
        sink: Optional[ResultSink] = None,
        engine: Optional[ValidationEngine] = None,
        config: Optional[LoadingConfig] = None,
        monitor: Optional[LoadMonitor] = None,
        poll_interval: float = 0.05,
    ) -> None:
        self.queue = queue
        self.provider = provider
        self.config = config or queue.config
        self.sink = sink if sink is not None else MemorySink()
        self.engine = engine or ValidationEngine(self.config.validation)
        self.monitor = monitor or LoadMonitor(queue, self.config.monitoring.alert_thresholds)
        self.poll_interval = poll_interval

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._stats_lock = threading.Lock()
        self.api_calls = 0
        self.records_loaded = 0

    # -- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            log.warning("Scheduler already running")
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._worker, name=f"scheduler-worker-{i}", daemon=True)
            for i in range(self.config.max_concurrent_jobs)
        ]
        self._threads.append(
            threading.Thread(target=self._monitor_loop, name="scheduler-monitor", daemon=True)
        )
        for thread in self._threads:
            thread.start()
        log.info(
            f"[SCHEDULER START] {self.config.max_concurrent_jobs} workers",
            extra={"workers": self.config.max_concurrent_jobs, "provider": self.provider.name},
        )

    def stop(self, wait: bool = True) -> None:
        """Signal workers to exit after their current job; optionally join them."""
        self._stop.set()
        if wait:
            for thread in self._threads:
                thread.join()
            self._threads = []
        log.info("[SCHEDULER STOP]", extra={"api_calls": self.api_calls})

    def _stalled(self) -> bool:
        # Nothing in flight and no pending job fits today's remaining budget.
        return self.queue.is_starved()

    def run_until_idle(self, timeout: Optional[float] = None) -> RunSummary:
        """
        Run workers until the queue drains, the quota left fits no pending job, or ``timeout``.

        Parameters
        ----------
        timeout : float | None
            Wall-clock seconds to wait before stopping regardless of queue state.

        Returns
        -------
        RunSummary
            Job counts by status plus calls made and records loaded by this run.
        """
        started = time.monotonic()
        calls_before, loaded_before = self.api_calls, self.records_loaded
        timed_out = False
        self.start()
        try:
            while not self.queue.is_drained():
                if self._stalled():
                    log.warning(
                        "Daily API budget cannot cover any pending job; stopping",
                        extra=self.queue.quota.snapshot(),
                    )
                    break
                if timeout is not None and time.monotonic() - started >= timeout:
                    timed_out = True
                    log.warning(f"Run timed out after {timeout}s", extra={"timeout": timeout})
                    break
                time.sleep(self.poll_interval)
        finally:
            self.stop(wait=True)

        metrics = self.queue.metrics()
        summary = RunSummary(
            completed=metrics["completedJobs"],
            failed=metrics["failedJobs"],
            paused=metrics["pausedJobs"],
            pending=metrics["pendingJobs"],
            api_calls=self.api_calls - calls_before,
            records_loaded=self.records_loaded - loaded_before,
            duration_seconds=time.monotonic() - started,
            timed_out=timed_out,
        )
        log.info("[SCHEDULER COMPLETE]", extra=summary.as_dict())
        return summary

    # -- workers -----------------------------------------------------------

    def _worker(self) -> None:
        while not self._stop.is_set():
            jobs = self.queue.next_eligible(1)
            if not jobs:
                self._stop.wait(self.poll_interval)
                continue
            try:
                self.process(jobs[0])
            except Exception:  # noqa: BLE001 - a bad job must not take the worker down
                log.exception(f"Worker failed on job {jobs[0].id}", extra={"job_id": jobs[0].id})

    def _monitor_loop(self) -> None:
        interval = self.config.monitoring.metrics_interval_ms / 1000.0
        while not self._stop.wait(interval):
            self.monitor.log_snapshot()

    # -- one job -----------------------------------------------------------

    def process(self, job: Job) -> Job:
        """Run one claimed job end to end and report its outcome to the queue."""
        if job.status is JobStatus.PAUSED:
            return self.queue.abort_dispatch(job.id)

        batches = split_batches(job, self.config)
        log.info(
            f"[JOB START] {job.id}",
            extra={"job_id": job.id, "batches": len(batches), "retry_count": job.retry_count},
        )
        with profile_block(job.id) as stats:
            outcome = self._execute(job, batches)
        job = self.queue.report_outcome(job.id, outcome)

        extra = {"job_id": job.id, "outcome": outcome.kind.value, **stats.as_dict()}
        if job.status is JobStatus.COMPLETED:
            log.info(f"[JOB SUCCESS] {job.id}", extra={**extra, "records": job.processed_records})
        elif job.status is JobStatus.FAILED:
            log.error(f"[JOB FAILED] {job.id}: {job.last_error}", extra=extra)
        elif job.status is JobStatus.PAUSED:
            log.info(f"[JOB PAUSED] {job.id}", extra=extra)
        else:
            log.warning(
                f"[JOB RETRY] {job.id} ({job.retry_count}/{job.max_retries})",
                extra={**extra, "not_before": job.not_before},
            )
        return job

    def _release_unsent(self, job: Job, unsent: int) -> None:
        if unsent > 0:
            self.queue.quota.release(unsent)
            log.debug(f"Released {unsent} unsent calls", extra={"job_id": job.id})

    def _execute(self, job: Job, batches: Sequence[BatchSpec]) -> JobOutcome:
        processed = 0
        worst: Optional[ValidationResult] = None
        for index, spec in enumerate(batches):
            unsent_after = len(batches) - index - 1
            with self._stats_lock:
                self.api_calls += 1
            try:
                records = self.provider.fetch(spec)
            except FatalError as exc:
                self._release_unsent(job, unsent_after)
                return JobOutcome.fatal_error(str(exc))
            except TransientError as exc:
                self._release_unsent(job, unsent_after)
                return JobOutcome.transient_error(str(exc))
            except Exception as exc:  # noqa: BLE001 - unknown provider failures are retried
                log.exception(f"Provider error on job {job.id}", extra={"job_id": job.id})
                self._release_unsent(job, unsent_after)
                return JobOutcome.transient_error(f"{type(exc).__name__}: {exc}")

            result: Optional[ValidationResult] = None
            if self.config.validation.enabled:
                try:
                    result = self.engine.validate_or_raise(records, spec.level, job_id=job.id)
                except ValidationFailure as failure:
                    self._release_unsent(job, unsent_after)
                    if not self.config.validation.strict_mode:
                        self._persist_valid_subset(job, failure.result, records, spec)
                    return JobOutcome.partial_failure(failure.result)
                if worst is None or result.score < worst.score:
                    worst = result

            try:
                self._persist(job, result, records)
            except Exception as exc:  # noqa: BLE001 - any sink failure is retryable
                log.exception(f"Persistence failed for job {job.id}", extra={"job_id": job.id})
                self._release_unsent(job, unsent_after)
                return JobOutcome.transient_error(f"persistence failed: {exc}")
            processed += len(records)

        return JobOutcome.success(records_processed=processed, validation=worst)

    def _persist(
        self, job: Job, result: Optional[ValidationResult], records: Sequence[Record]
    ) -> int:
        written = self.sink.persist(job, result, records)
        with self._stats_lock:
            self.records_loaded += written
        return written

    def _persist_valid_subset(
        self, job: Job, result: ValidationResult, records: Sequence[Record], spec: BatchSpec
    ) -> None:
        valid = [r for r in records if not self.engine.check_record(r, spec.level)]
        if not valid:
            return
        try:
            written = self._persist(job, result, valid)
        except Exception:  # noqa: BLE001 - the job is already being retried
            log.exception(f"Persistence of valid subset failed for job {job.id}")
            return
        log.info(
            f"Persisted {written} valid records from failing batch",
            extra={"job_id": job.id, "score": result.score},
        )


__all__ = ["RunSummary", "Scheduler"]
