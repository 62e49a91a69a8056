"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlmodel import Session, col, select

from wiki_jobs.queue.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobQueueError,
    JobValidationError,
    StoreUnavailableError,
)
from wiki_jobs.queue.metrics import build_job_stats
from wiki_jobs.queue.models import (
    ACTIVE_STATUSES,
    JobCreate,
    JobListPage,
    JobStats,
    JobStatus,
    JobView,
    SweepResult,
)
from wiki_jobs.queue.retry_policy import decide_on_failure
from wiki_jobs.storage.alembic_runner import upgrade_head
from wiki_jobs.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from wiki_jobs.storage.sqlmodel_models import Job

MAX_TYPE_LENGTH = 100
MAX_BATCH_SIZE = 500
MAX_RETRIES_CEILING = 100
MANUAL_RETRY_MESSAGE = "Manual retry requested"


class JobRepository:
    """Queue persistence facade; every transition is a conditional write on status."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5000,
        default_max_retries: int = 3,
        retry_backoff_seconds: float = 0.0,
        retry_backoff_max_seconds: float = 900.0,
    ) -> None:
        self.db_path = db_path
        self.default_max_retries = default_max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except OperationalError as error:
            raise StoreUnavailableError(str(error.orig or error)) from error

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except (OperationalError, InterfaceError) as error:
            raise StoreUnavailableError(str(error.orig or error)) from error

    # --- creation -------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> JobView:
        """Create one pending job."""

        row = self._new_row(payload)
        with self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def create_batch(self, payloads: list[JobCreate]) -> list[JobView]:
        """Create several jobs in one transaction; one invalid item creates nothing."""

        rows = self._validate_batch(payloads)
        with self._session() as session:
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_job_view(row) for row in rows]

    def create_fan_out(
        self,
        children: list[JobCreate],
        build_aggregate: Callable[[list[int]], JobCreate],
    ) -> tuple[list[JobView], JobView]:
        """Create child jobs plus one aggregate job that references their ids."""

        rows = self._validate_batch(children)
        with self._session() as session:
            session.add_all(rows)
            session.flush()
            child_ids = [row.id for row in rows if row.id is not None]
            try:
                aggregate_row = self._new_row(build_aggregate(child_ids))
            except JobValidationError:
                session.rollback()
                raise
            session.add(aggregate_row)
            session.commit()
            for row in [*rows, aggregate_row]:
                session.refresh(row)
            return [_to_job_view(row) for row in rows], _to_job_view(aggregate_row)

    def _validate_batch(self, payloads: list[JobCreate]) -> list[Job]:
        if not payloads:
            raise JobValidationError("Batch must contain at least one job.")
        if len(payloads) > MAX_BATCH_SIZE:
            raise JobValidationError(
                f"Batch too large: {len(payloads)} jobs (max {MAX_BATCH_SIZE}).",
            )
        rows: list[Job] = []
        for index, payload in enumerate(payloads):
            try:
                rows.append(self._new_row(payload))
            except JobValidationError as error:
                raise JobValidationError(f"Batch item {index}: {error}") from error
        return rows

    def _new_row(self, payload: JobCreate) -> Job:
        job_type = _validate_type(payload.type)
        params = _validate_json_object(payload.params, field_name="params")
        if isinstance(payload.priority, bool) or not isinstance(payload.priority, int):
            raise JobValidationError("priority must be an integer.")
        max_retries = (
            self.default_max_retries if payload.max_retries is None else payload.max_retries
        )
        if (
            isinstance(max_retries, bool)
            or not isinstance(max_retries, int)
            or not 0 <= max_retries <= MAX_RETRIES_CEILING
        ):
            raise JobValidationError(
                f"max_retries must be an integer between 0 and {MAX_RETRIES_CEILING}.",
            )
        return Job(
            type=job_type,
            status=JobStatus.PENDING.value,
            params=params,
            priority=payload.priority,
            retries=0,
            max_retries=max_retries,
            created_at=to_db_datetime(utc_now()),
        )

    # --- reads ----------------------------------------------------------------

    def get_job(self, job_id: int) -> JobView | None:
        """Return one job by id."""

        with self._session() as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> JobListPage:
        """List jobs most-recent-first, optionally filtered by status and type."""

        if limit < 1:
            raise JobValidationError("limit must be positive.")
        if offset < 0:
            raise JobValidationError("offset must not be negative.")

        filters = []
        if status is not None:
            filters.append(col(Job.status) == status.value)
        if job_type is not None:
            filters.append(col(Job.type) == job_type)

        with self._session() as session:
            total = session.exec(select(func.count()).select_from(Job).where(*filters)).one()
            rows = session.exec(
                select(Job)
                .where(*filters)
                .order_by(col(Job.created_at).desc(), col(Job.id).desc())
                .offset(offset)
                .limit(limit),
            ).all()
            entries = [_to_job_view(row) for row in rows]
        return JobListPage(entries=entries, total=int(total), limit=limit, offset=offset)

    def stats(self) -> JobStats:
        """Per-type status counts, average completed duration, and failure rate."""

        with self._session() as session:
            counts = session.exec(
                select(Job.type, Job.status, func.count())
                .group_by(col(Job.type), col(Job.status)),
            ).all()
            timings = session.exec(
                select(Job.type, Job.started_at, Job.completed_at).where(
                    col(Job.status) == JobStatus.COMPLETED.value,
                    col(Job.started_at).is_not(None),
                    col(Job.completed_at).is_not(None),
                ),
            ).all()
        return build_job_stats(
            status_counts=[(job_type, status, int(count)) for job_type, status, count in counts],
            completed_durations=[
                (job_type, to_utc_aware_datetime(started), to_utc_aware_datetime(completed))
                for job_type, started, completed in timings
                if started is not None and completed is not None
            ],
        )

    # --- claim protocol -------------------------------------------------------

    def claim_next_job(self, *, worker_id: str, job_type: str | None = None) -> JobView | None:
        """Atomically claim the highest-priority eligible pending job."""

        if not worker_id:
            raise JobValidationError("worker_id must not be empty.")

        skipped: list[int] = []
        while True:
            now = to_db_datetime(utc_now())
            with self._session() as session:
                statement = select(Job).where(
                    col(Job.status) == JobStatus.PENDING.value,
                    or_(
                        col(Job.retry_not_before).is_(None),
                        col(Job.retry_not_before) <= now,
                    ),
                )
                if job_type is not None:
                    statement = statement.where(col(Job.type) == job_type)
                if skipped:
                    statement = statement.where(col(Job.id).not_in(skipped))
                candidate = session.exec(
                    statement.order_by(
                        col(Job.priority).desc(),
                        col(Job.created_at).asc(),
                        col(Job.id).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None or candidate.id is None:
                    return None
                candidate_id = candidate.id

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.id) == candidate_id,
                        col(Job.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.CLAIMED.value,
                        worker_id=worker_id,
                        claimed_at=now,
                        started_at=None,
                        retry_not_before=None,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    skipped.append(candidate_id)
                    continue
                session.commit()
                claimed = session.get(Job, candidate_id, populate_existing=True)
                if claimed is None:
                    return None
                return _to_job_view(claimed)

    def start_job(self, *, job_id: int, worker_id: str | None = None) -> JobView | None:
        """Move a claimed job to running; ``None`` if the claim was lost."""

        filters = [col(Job.id) == job_id, col(Job.status) == JobStatus.CLAIMED.value]
        if worker_id is not None:
            filters.append(col(Job.worker_id) == worker_id)
        return self._conditional_update(
            filters=filters,
            values={"status": JobStatus.RUNNING.value, "started_at": to_db_datetime(utc_now())},
            job_id=job_id,
        )

    def complete_job(
        self,
        *,
        job_id: int,
        result: dict[str, Any],
        worker_id: str | None = None,
    ) -> JobView | None:
        """Mark a running job completed with its result payload."""

        payload = _validate_json_object(result, field_name="result")
        filters = [col(Job.id) == job_id, col(Job.status) == JobStatus.RUNNING.value]
        if worker_id is not None:
            filters.append(col(Job.worker_id) == worker_id)
        return self._conditional_update(
            filters=filters,
            values={
                "status": JobStatus.COMPLETED.value,
                "result": payload if payload is not None else {},
                "error": None,
                "completed_at": to_db_datetime(utc_now()),
            },
            job_id=job_id,
        )

    def fail_job(
        self,
        *,
        job_id: int,
        error: str,
        worker_id: str | None = None,
    ) -> JobView | None:
        """Record a failed attempt and apply the retry policy.

        Returns the updated job (``pending`` when retried, ``failed`` at the ceiling) or
        ``None`` when the job is no longer claimed/running by the caller.
        """

        with self._session() as session:
            row = session.get(Job, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            observed = JobStatus(row.status)
            if observed not in ACTIVE_STATUSES:
                return None
            if worker_id is not None and row.worker_id != worker_id:
                return None

            now = utc_now()
            decision = decide_on_failure(
                retries=row.retries,
                max_retries=row.max_retries,
                now=now,
                backoff_seconds=self.retry_backoff_seconds,
                backoff_max_seconds=self.retry_backoff_max_seconds,
            )
            if decision.retry:
                values: dict[str, Any] = {
                    "status": JobStatus.PENDING.value,
                    "retries": decision.retries,
                    "error": error,
                    "worker_id": None,
                    "claimed_at": None,
                    "started_at": None,
                    "completed_at": None,
                    "retry_not_before": (
                        to_db_datetime(decision.not_before)
                        if decision.not_before is not None
                        else None
                    ),
                }
            else:
                values = {
                    "status": JobStatus.FAILED.value,
                    "error": error,
                    "result": None,
                    "completed_at": to_db_datetime(now),
                }

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == observed.value,
                    col(Job.retries) == row.retries,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def defer_job(
        self,
        *,
        job_id: int,
        reason: str,
        not_before: datetime,
        worker_id: str | None = None,
    ) -> JobView | None:
        """Return a claimed/running job to pending without consuming a retry."""

        filters = [
            col(Job.id) == job_id,
            col(Job.status).in_([status.value for status in ACTIVE_STATUSES]),
        ]
        if worker_id is not None:
            filters.append(col(Job.worker_id) == worker_id)
        return self._conditional_update(
            filters=filters,
            values={
                "status": JobStatus.PENDING.value,
                "error": reason,
                "worker_id": None,
                "claimed_at": None,
                "started_at": None,
                "retry_not_before": to_db_datetime(not_before),
            },
            job_id=job_id,
        )

    def _conditional_update(
        self,
        *,
        filters: list[Any],
        values: dict[str, Any],
        job_id: int,
    ) -> JobView | None:
        with self._session() as session:
            result = session.exec(sa_update(Job).where(*filters).values(**values))
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(Job, job_id, populate_existing=True)
            return _to_job_view(row) if row is not None else None

    # --- operator actions -----------------------------------------------------

    def cancel_job(self, *, job_id: int) -> JobView:
        """Cancel a pending or claimed job.

        The status check and the write are one conditional update, so a job claimed
        while the operator cancels it is still cancelled.
        """

        with self._session() as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status).in_([JobStatus.PENDING.value, JobStatus.CLAIMED.value]),
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    completed_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                row = session.get(Job, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                raise InvalidTransitionError(
                    f"Job #{job_id} cannot be cancelled from status={row.status}",
                )
            session.commit()
            row = session.get(Job, job_id, populate_existing=True)
            if row is None:
                raise JobNotFoundError(job_id)
            return _to_job_view(row)

    def retry_job(self, *, job_id: int) -> JobView:
        """Operator retry.

        An active job is failed through the retry policy; a failed or cancelled job is
        resubmitted as a new pending job and the terminal record stays as it is.
        """

        current = self.get_job(job_id)
        if current is None:
            raise JobNotFoundError(job_id)

        if current.status in ACTIVE_STATUSES:
            updated = self.fail_job(job_id=job_id, error=MANUAL_RETRY_MESSAGE)
            if updated is None:
                raise JobQueueError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            return updated

        if current.status in {JobStatus.FAILED, JobStatus.CANCELLED}:
            return self.create_job(
                JobCreate(
                    type=current.type,
                    params=current.params,
                    priority=current.priority,
                    max_retries=current.max_retries,
                ),
            )

        raise InvalidTransitionError(
            f"Job #{job_id} cannot be retried from status={current.status.value}",
        )

    # --- stale reclamation ----------------------------------------------------

    def sweep_stale_jobs(self, *, lease_timeout: timedelta) -> SweepResult:
        """Return claimed/running jobs whose lease expired to pending."""

        if lease_timeout <= timedelta(0):
            raise JobValidationError("lease timeout must be positive.")

        cutoff = to_db_datetime(utc_now() - lease_timeout)
        swept: list[JobView] = []
        with self._session() as session:
            stale = session.exec(
                select(Job)
                .where(
                    col(Job.status).in_([status.value for status in ACTIVE_STATUSES]),
                    col(Job.claimed_at).is_not(None),
                    col(Job.claimed_at) < cutoff,
                )
                .order_by(col(Job.claimed_at).asc(), col(Job.id).asc()),
            ).all()
            observed = [(row.id, row.status, row.claimed_at) for row in stale]

        for job_id, status, claimed_at in observed:
            if job_id is None:
                continue
            view = self._conditional_update(
                filters=[
                    col(Job.id) == job_id,
                    col(Job.status) == status,
                    col(Job.claimed_at) == claimed_at,
                ],
                values={
                    "status": JobStatus.PENDING.value,
                    "worker_id": None,
                    "claimed_at": None,
                    "started_at": None,
                },
                job_id=job_id,
            )
            if view is not None:
                swept.append(view)
        return SweepResult(swept=len(swept), jobs=swept)


def _validate_type(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise JobValidationError("type must be a non-empty string.")
    job_type = value.strip()
    if len(job_type) > MAX_TYPE_LENGTH:
        raise JobValidationError(f"type must be at most {MAX_TYPE_LENGTH} characters.")
    return job_type


def _validate_json_object(value: object, *, field_name: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise JobValidationError(f"{field_name} must be a JSON object.")
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as error:
        raise JobValidationError(f"{field_name} is not JSON-serializable: {error}") from error
    return value


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    return JobView(
        id=row.id or 0,
        type=row.type,
        status=JobStatus(row.status),
        params=row.params,
        result=row.result,
        error=row.error,
        priority=row.priority,
        retries=row.retries,
        max_retries=row.max_retries,
        worker_id=row.worker_id,
        retry_not_before=_optional_aware(row.retry_not_before),
        created_at=to_utc_aware_datetime(row.created_at),
        claimed_at=_optional_aware(row.claimed_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
    )
