from __future__ import annotations

import threading
from datetime import datetime, timedelta

import pytest

from census_ingest.config import ApiRateLimit, LoadingConfig
from census_ingest.domain.models import (
    GeographyLevel,
    JobOutcome,
    JobStatus,
    ValidationMetrics,
    ValidationResult,
)
from census_ingest.errors import DuplicateJob, InvalidJob, InvalidTransition, JobNotFound
from census_ingest.scheduling.job_queue import JobQueue
from census_ingest.scheduling.retry import RetryPolicy

from tests.conftest import T0

FAILING_RESULT = ValidationResult(
    passed=False,
    score=0.5,
    metrics=ValidationMetrics(total_records=2, valid_records=1, invalid_records=1),
)
PASSING_RESULT = ValidationResult(
    passed=True,
    score=1.0,
    metrics=ValidationMetrics(total_records=2, valid_records=2),
)


def _claim_one(queue: JobQueue):
    jobs = queue.next_eligible(1)
    assert len(jobs) == 1
    return jobs[0]


# -- admission -------------------------------------------------------------


def test_add_sets_pending(queue, make_job):
    job = queue.add(make_job(status=JobStatus.FAILED))
    assert job.status is JobStatus.PENDING
    assert "job-1" in queue
    assert len(queue) == 1


def test_duplicate_id_rejected(queue, make_job):
    queue.add(make_job())
    with pytest.raises(DuplicateJob):
        queue.add(make_job())


def test_duplicate_of_finished_job_rejected(queue, make_job):
    queue.add(make_job())
    queue.report_outcome(_claim_one(queue).id, JobOutcome.success())
    with pytest.raises(DuplicateJob):
        queue.add(make_job())


@pytest.mark.parametrize(
    "fields",
    [
        {"priority": 101},
        {"priority": -1},
        {"variables": []},
        {"max_retries": -1},
        {"retry_count": 4, "max_retries": 3},
        {"estimated_records": -5},
    ],
)
def test_invalid_jobs_rejected(queue, make_job, fields):
    with pytest.raises(InvalidJob):
        queue.add(make_job(**fields))
    assert len(queue) == 0


def test_naive_and_aware_created_at_can_coexist(queue, make_job):
    naive = datetime(2024, 3, 1, 11, 0, 0)
    queue.add(make_job("aware", created_at=T0))
    queue.add(make_job("naive", created_at=naive))

    assert [j.id for j in queue.next_eligible(2)] == ["naive", "aware"]
    assert queue.get("naive").created_at == naive
    assert queue.get("naive").created_at.tzinfo is None


def _tract_codes(n: int):
    return [f"06075{i:06d}" for i in range(n)]


def test_job_costlier_than_burst_limit_rejected(clock, make_job):
    config = LoadingConfig(
        api_rate_limit=ApiRateLimit(daily_limit=100, burst_limit=5, reserve_for_users=0)
    )
    queue = JobQueue(config, clock=clock)
    job = make_job(level=GeographyLevel.TRACT, codes=_tract_codes(120))
    assert queue.call_cost(job) == 6

    with pytest.raises(InvalidJob, match="call cost 6"):
        queue.add(job)
    assert len(queue) == 0


def test_job_costlier_than_daily_budget_rejected(clock, make_job):
    config = LoadingConfig(
        api_rate_limit=ApiRateLimit(daily_limit=13, burst_limit=50, reserve_for_users=10)
    )
    queue = JobQueue(config, clock=clock)

    with pytest.raises(InvalidJob):
        queue.add(make_job(level=GeographyLevel.TRACT, codes=_tract_codes(80)))
    queue.add(make_job("fits", level=GeographyLevel.TRACT, codes=_tract_codes(60)))
    assert "fits" in queue


# -- ordering --------------------------------------------------------------


def test_scenario_priority_order(queue, make_job):
    for job_id, priority in (("a", 50), ("b", 90), ("c", 95)):
        queue.add(make_job(job_id, priority=priority))

    selected = queue.next_eligible(3)

    assert [j.priority for j in selected] == [95, 90, 50]
    assert all(j.status is JobStatus.RUNNING for j in selected)


def test_equal_priority_oldest_first(queue, make_job):
    queue.add(make_job("young", priority=70, created_at=T0 + timedelta(seconds=5)))
    queue.add(make_job("old", priority=70, created_at=T0))
    assert [j.id for j in queue.next_eligible(2)] == ["old", "young"]


def test_claims_never_lower_than_pending_higher(queue, make_job):
    priorities = [12, 87, 87, 3, 100, 45, 0, 66, 66, 91, 45, 30]
    for i, priority in enumerate(priorities):
        queue.add(make_job(f"job-{i}", priority=priority))

    claimed = []
    while True:
        batch = queue.next_eligible(1)
        if not batch:
            break
        claimed.append(batch[0].priority)

    assert claimed == sorted(priorities, reverse=True)


def test_next_eligible_returns_fewer_and_never_twice(queue, make_job):
    queue.add(make_job("a"))
    queue.add(make_job("b"))

    first = queue.next_eligible(5)
    second = queue.next_eligible(5)

    assert len(first) == 2
    assert second == []
    assert queue.next_eligible(0) == []


# -- quota -----------------------------------------------------------------


def test_quota_denied_job_stays_pending_and_cheaper_job_runs(clock, make_job):
    config = LoadingConfig(
        api_rate_limit=ApiRateLimit(daily_limit=3, burst_limit=100, reserve_for_users=0)
    )
    queue = JobQueue(config, clock=clock)
    many_codes = [f"{i:02d}" for i in range(60)]  # two state batches
    queue.add(make_job("big-a", priority=90, codes=many_codes))
    queue.add(make_job("big-b", priority=80, codes=many_codes))
    queue.add(make_job("small", priority=10))

    selected = queue.next_eligible(3)

    assert [j.id for j in selected] == ["big-a", "small"]
    assert queue.get("big-b").status is JobStatus.PENDING
    assert queue.quota.consumed_today == 3
    assert selected[0].reserved_cost == 2


def test_quota_charged_even_when_attempt_fails(queue, make_job):
    queue.add(make_job())
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.transient_error("upstream 503"))
    assert queue.quota.consumed_today == 1


def test_abort_dispatch_releases_quota_and_requeues(queue, make_job):
    queue.add(make_job())
    job = _claim_one(queue)

    queue.abort_dispatch(job.id)

    assert job.status is JobStatus.PENDING
    assert queue.quota.consumed_today == 0
    assert not queue.is_claimed(job.id)
    assert queue.next_eligible(1)[0].id == job.id


def test_abort_dispatch_without_claim_is_invalid(queue, make_job):
    queue.add(make_job())
    with pytest.raises(InvalidTransition):
        queue.abort_dispatch("job-1")


# -- outcomes --------------------------------------------------------------


def test_success_completes_and_removes_from_active(queue, make_job):
    queue.add(make_job())
    job = _claim_one(queue)

    queue.report_outcome(job.id, JobOutcome.success(records_processed=52))

    assert job.status is JobStatus.COMPLETED
    assert job.processed_records == 52
    assert job.completed_at == T0
    assert len(queue) == 0
    assert queue.get(job.id) is job


def test_scenario_retries_exhausted(queue, make_job, clock):
    queue.add(make_job(max_retries=2))

    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.transient_error("timeout"))
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 1
    assert job.not_before == clock.now + timedelta(seconds=1)

    clock.advance(1)
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.transient_error("timeout"))
    assert job.retry_count == 2
    assert job.not_before == clock.now + timedelta(seconds=2)

    clock.advance(2)
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.transient_error("timeout"))

    assert job.status is JobStatus.FAILED
    assert job.retry_count == 2
    assert job.not_before is None
    assert job.error_count == 3
    assert job.last_error == "timeout"


def test_terminal_state_is_idempotent(queue, make_job):
    queue.add(make_job(max_retries=0))
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.transient_error("boom"))
    assert job.status is JobStatus.FAILED

    again = queue.report_outcome(job.id, JobOutcome.success(records_processed=10))

    assert again.status is JobStatus.FAILED
    assert again.processed_records == 0


def test_retry_waits_for_backoff(queue, make_job, clock):
    queue.add(make_job())
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.transient_error("x"))

    assert queue.next_eligible(1) == []
    clock.advance(0.999)
    assert queue.next_eligible(1) == []
    clock.advance(0.001)
    assert queue.next_eligible(1)[0].id == job.id


def test_fatal_error_fails_without_retry(queue, make_job):
    queue.add(make_job(max_retries=5))
    job = _claim_one(queue)

    queue.report_outcome(job.id, JobOutcome.fatal_error("unknown variable"))

    assert job.status is JobStatus.FAILED
    assert job.retry_count == 0
    assert job.last_error == "unknown variable"


def test_partial_failure_retries_and_attaches_result(queue, make_job, clock):
    queue.add(make_job(max_retries=1))
    job = _claim_one(queue)

    queue.report_outcome(job.id, JobOutcome.partial_failure(FAILING_RESULT))
    assert job.status is JobStatus.PENDING
    assert job.last_validation == FAILING_RESULT
    assert "below accuracy threshold" in job.last_error

    clock.advance(1)
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.partial_failure(FAILING_RESULT))

    assert job.status is JobStatus.FAILED
    assert job.last_validation.score == 0.5


def test_partial_failure_with_passing_result_completes(queue, make_job):
    queue.add(make_job())
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.partial_failure(PASSING_RESULT))
    assert job.status is JobStatus.COMPLETED


def test_report_for_unknown_or_unclaimed_job(queue, make_job):
    with pytest.raises(JobNotFound):
        queue.report_outcome("nope", JobOutcome.success())
    queue.add(make_job())
    with pytest.raises(InvalidTransition):
        queue.report_outcome("job-1", JobOutcome.success())


# -- pause / resume --------------------------------------------------------


def test_pause_pending_hides_job_until_resume(queue, make_job):
    queue.add(make_job())

    queue.pause("job-1")
    assert queue.next_eligible(1) == []
    assert queue.pause("job-1").status is JobStatus.PAUSED

    queue.resume("job-1")
    assert queue.next_eligible(1)[0].id == "job-1"


def test_pause_and_resume_errors(queue, make_job):
    with pytest.raises(JobNotFound):
        queue.pause("missing")
    queue.add(make_job())
    with pytest.raises(InvalidTransition):
        queue.resume("job-1")
    queue.report_outcome(_claim_one(queue).id, JobOutcome.success())
    with pytest.raises(InvalidTransition):
        queue.pause("job-1")


def test_paused_running_job_records_success(queue, make_job):
    queue.add(make_job())
    job = _claim_one(queue)

    queue.pause(job.id)
    queue.report_outcome(job.id, JobOutcome.success(records_processed=3))

    assert job.status is JobStatus.COMPLETED
    assert job.processed_records == 3


def test_paused_running_job_failure_stays_paused(queue, make_job):
    queue.add(make_job())
    job = _claim_one(queue)

    queue.pause(job.id)
    queue.report_outcome(job.id, JobOutcome.transient_error("flaky"))

    assert job.status is JobStatus.PAUSED
    assert job.retry_count == 1
    assert job.not_before is None
    assert queue.next_eligible(1) == []

    queue.resume(job.id)
    assert queue.next_eligible(1)[0].id == job.id


def test_resume_while_in_flight_waits_for_report(queue, make_job, clock):
    queue.add(make_job())
    job = _claim_one(queue)
    queue.pause(job.id)
    queue.resume(job.id)

    assert job.status is JobStatus.PENDING
    assert queue.next_eligible(1) == []

    queue.report_outcome(job.id, JobOutcome.transient_error("x"))
    clock.advance(1)
    assert queue.next_eligible(1)[0].id == job.id


# -- inspection ------------------------------------------------------------


def test_metrics_snapshot(queue, make_job, clock):
    queue.add(make_job("a", priority=90))
    queue.add(make_job("b", priority=90))
    queue.add(make_job("c", priority=50))
    queue.add(make_job("d", priority=20))
    queue.pause("d")

    before = queue.metrics()
    assert before == queue.metrics()
    assert before["totalJobs"] == 4
    assert before["pendingJobs"] == 3
    assert before["pausedJobs"] == 1
    assert before["runningJobs"] == 0
    assert list(before["queueDepthByPriority"].items()) == [(90, 2), (50, 1)]

    clock.advance(4)
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.success())
    _claim_one(queue)

    after = queue.metrics()
    assert after["runningJobs"] == 1
    assert after["completedJobs"] == 1
    assert after["inFlight"] == 1
    assert after["queueDepthByPriority"] == {50: 1}
    assert after["averageWaitSeconds"] == pytest.approx(4.0)


def test_jobs_by_status_and_drained(queue, make_job):
    queue.add(make_job("a"))
    queue.add(make_job("b"))
    queue.pause("b")
    assert not queue.is_drained()

    job = _claim_one(queue)
    assert [j.id for j in queue.jobs_by_status(JobStatus.RUNNING)] == ["a"]
    queue.report_outcome(job.id, JobOutcome.success())

    assert queue.is_drained()
    assert [j.id for j in queue.jobs_by_status(JobStatus.COMPLETED)] == ["a"]
    assert [j.id for j in queue.jobs_by_status(JobStatus.PAUSED)] == ["b"]


def test_cleanup_forgets_old_finished_jobs(queue, make_job, clock):
    queue.add(make_job("old"))
    queue.report_outcome(_claim_one(queue).id, JobOutcome.success())
    clock.advance(hours=2)
    queue.add(make_job("new"))
    queue.report_outcome(_claim_one(queue).id, JobOutcome.success())

    removed = queue.cleanup(timedelta(hours=1))

    assert removed == 1
    assert "old" not in queue
    assert queue.get("new") is not None


def test_retry_deadline_comes_from_retry_policy(config, clock, make_job):
    class FixedDelay(RetryPolicy):
        def not_before(self, now, retry_count):
            return now + timedelta(minutes=7 + retry_count)

    queue = JobQueue(config, retry_policy=FixedDelay(), clock=clock)
    queue.add(make_job())
    job = _claim_one(queue)

    queue.report_outcome(job.id, JobOutcome.transient_error("x"))

    assert job.not_before == T0 + timedelta(minutes=7)


def test_starved_only_when_no_pending_job_fits_remaining_budget(clock, make_job):
    config = LoadingConfig(
        api_rate_limit=ApiRateLimit(daily_limit=3, burst_limit=100, reserve_for_users=0)
    )
    queue = JobQueue(config, clock=clock)
    many_codes = [f"{i:02d}" for i in range(60)]
    queue.add(make_job("a", codes=many_codes))
    queue.add(make_job("b", codes=many_codes))
    assert not queue.is_starved()

    job = _claim_one(queue)
    assert not queue.is_starved()
    queue.report_outcome(job.id, JobOutcome.success())

    assert queue.quota.remaining() == 1
    assert queue.is_starved()
    clock.advance(hours=12)
    assert not queue.is_starved()


def test_job_waiting_on_backoff_is_not_starved(queue, make_job, clock):
    queue.add(make_job())
    job = _claim_one(queue)
    queue.report_outcome(job.id, JobOutcome.transient_error("x"))

    assert queue.next_eligible(1) == []
    assert not queue.is_starved()


def test_concurrent_claims_take_each_job_once(clock, make_job):
    config = LoadingConfig(
        api_rate_limit=ApiRateLimit(daily_limit=10_000, burst_limit=10_000, reserve_for_users=0)
    )
    queue = JobQueue(config, clock=clock)
    for i in range(200):
        codes = [f"{c:02d}" for c in range(1 + (i % 3) * 50)]
        queue.add(make_job(f"job-{i}", priority=i % 101, codes=codes))

    claimed = []
    lock = threading.Lock()
    start = threading.Barrier(16)

    def worker():
        start.wait()
        while True:
            batch = queue.next_eligible(1)
            if not batch:
                return
            with lock:
                claimed.extend(batch)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    ids = [job.id for job in claimed]
    assert len(ids) == len(set(ids)) == 200
    assert queue.quota.consumed_today == sum(job.reserved_cost for job in claimed)
    assert queue.metrics()["inFlight"] == 200
