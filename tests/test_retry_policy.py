from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from wiki_jobs.queue.models import JobCreate, JobStatus
from wiki_jobs.queue.repository import JobRepository
from wiki_jobs.queue.retry_policy import compute_backoff_delay, decide_on_failure

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Retry Policy"),
]

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


def _fail_current_attempt(repository: JobRepository, job_id: int, error: str):
    claimed = repository.claim_next_job(worker_id="worker-a")
    assert claimed is not None
    assert claimed.id == job_id
    repository.start_job(job_id=job_id, worker_id="worker-a")
    return repository.fail_job(job_id=job_id, error=error, worker_id="worker-a")


def test_decide_on_failure_retries_below_ceiling() -> None:
    decision = decide_on_failure(retries=0, max_retries=2, now=NOW)
    assert decision.retry is True
    assert decision.retries == 1
    assert decision.not_before is None


def test_decide_on_failure_is_terminal_at_ceiling() -> None:
    decision = decide_on_failure(retries=2, max_retries=2, now=NOW)
    assert decision.retry is False
    assert decision.retries == 2

    assert decide_on_failure(retries=0, max_retries=0, now=NOW).retry is False


def test_decide_on_failure_with_backoff_sets_not_before() -> None:
    decision = decide_on_failure(
        retries=1,
        max_retries=5,
        now=NOW,
        backoff_seconds=30,
        backoff_max_seconds=900,
    )
    assert decision.retries == 2
    assert decision.not_before == NOW + timedelta(seconds=60)


@pytest.mark.parametrize(
    ("retry_number", "expected"),
    [(1, 10.0), (2, 20.0), (3, 40.0), (6, 100.0)],
)
def test_compute_backoff_delay_is_exponential_and_capped(retry_number: int, expected: float) -> None:
    assert (
        compute_backoff_delay(retry_number=retry_number, base_seconds=10, max_seconds=100)
        == expected
    )


def test_compute_backoff_delay_is_disabled_by_zero_base() -> None:
    assert compute_backoff_delay(retry_number=3, base_seconds=0, max_seconds=100) == 0.0


def test_two_retries_then_terminal_failure(repository: JobRepository) -> None:
    job = repository.create_job(JobCreate(type="page-improve", max_retries=2))

    outcomes = []
    for attempt in range(3):
        updated = _fail_current_attempt(repository, job.id, f"attempt {attempt} failed")
        assert updated is not None
        outcomes.append((updated.status, updated.retries))

    assert outcomes == [
        (JobStatus.PENDING, 1),
        (JobStatus.PENDING, 2),
        (JobStatus.FAILED, 2),
    ]
    final = repository.get_job(job.id)
    assert final.error == "attempt 2 failed"
    assert final.result is None
    assert final.completed_at is not None
    assert repository.claim_next_job(worker_id="worker-a") is None


def test_retried_job_is_released_by_its_worker(repository: JobRepository) -> None:
    job = repository.create_job(JobCreate(type="page-improve"))

    retried = _fail_current_attempt(repository, job.id, "timeout talking to upstream")

    assert retried is not None
    assert retried.status is JobStatus.PENDING
    assert retried.worker_id is None
    assert retried.claimed_at is None
    assert retried.started_at is None
    assert retried.completed_at is None
    assert retried.error == "timeout talking to upstream"


def test_fail_from_claimed_state_is_allowed(repository: JobRepository) -> None:
    job = repository.create_job(JobCreate(type="ping"))
    repository.claim_next_job(worker_id="worker-a")

    updated = repository.fail_job(job_id=job.id, error="could not start")

    assert updated is not None
    assert updated.status is JobStatus.PENDING
    assert updated.retries == 1


def test_fail_ignores_jobs_not_owned_or_not_active(repository: JobRepository) -> None:
    job = repository.create_job(JobCreate(type="ping"))
    assert repository.fail_job(job_id=job.id, error="not claimed") is None

    repository.claim_next_job(worker_id="worker-a")
    assert repository.fail_job(job_id=job.id, error="stale worker", worker_id="worker-b") is None
    assert repository.get_job(job.id).retries == 0


def test_retries_never_exceed_max_retries(repository: JobRepository) -> None:
    job = repository.create_job(JobCreate(type="ping", max_retries=3))

    while True:
        updated = _fail_current_attempt(repository, job.id, "boom")
        assert updated is not None
        assert updated.retries <= updated.max_retries
        if updated.status is JobStatus.FAILED:
            break

    assert repository.get_job(job.id).retries == 3


def test_backoff_keeps_retried_job_unclaimable(db_path) -> None:
    repository = JobRepository(db_path, retry_backoff_seconds=300)
    repository.init_schema()
    try:
        job = repository.create_job(JobCreate(type="ping"))
        retried = _fail_current_attempt(repository, job.id, "rate limited")

        assert retried is not None
        assert retried.status is JobStatus.PENDING
        assert retried.retry_not_before is not None
        assert retried.retry_not_before > datetime.now(tz=UTC) + timedelta(seconds=200)
        assert repository.claim_next_job(worker_id="worker-b") is None
    finally:
        repository.close()
