"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from wiki_jobs.config import Settings
from wiki_jobs.handlers import PING_JOB_TYPE, default_registry
from wiki_jobs.queue.batch import BatchOrchestrator, BatchRequest
from wiki_jobs.queue.errors import JobNotFoundError
from wiki_jobs.queue.metrics import render_stats_lines
from wiki_jobs.queue.models import JobCreate, JobStatus, JobView
from wiki_jobs.queue.repository import JobRepository
from wiki_jobs.queue.sweeper import StaleJobSweeper
from wiki_jobs.queue.worker import JobWorker

BATCH_CHILD_TYPES = {"improve": "page-improve", "create": "page-create"}
PING_PRIORITY = 10
PING_MAX_ATTEMPTS = 5
MAX_LISTED_ERROR_CHARS = 50


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    job_type: str | None
    limit: int
    offset: int = 0
    as_json: bool = False


@dataclass(slots=True)
class JobsCreateCommand:
    """CLI input for creating one job."""

    db_path: Path | None
    job_type: str
    params_json: str | None
    priority: int
    max_retries: int | None
    as_json: bool = False


@dataclass(slots=True)
class JobsInspectCommand:
    """CLI input for single-job status and mutations."""

    db_path: Path | None
    job_id: int
    as_json: bool = False


@dataclass(slots=True)
class JobsSweepCommand:
    """CLI input for stale-job sweeping."""

    db_path: Path | None
    timeout_minutes: float | None
    as_json: bool = False


@dataclass(slots=True)
class JobsStatsCommand:
    db_path: Path | None
    as_json: bool = False


@dataclass(slots=True)
class JobsBatchCommand:
    """CLI input for fan-out batch submission."""

    db_path: Path | None
    action: str
    items: tuple[str, ...]
    pr_title: str | None
    pr_body: str | None = None
    branch_name: str | None = None
    labels: tuple[str, ...] = field(default_factory=tuple)
    batch_id: str | None = None
    priority: int = 0
    max_retries: int | None = None
    as_json: bool = False


@dataclass(slots=True)
class JobsWorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    job_type: str | None
    poll: bool
    max_jobs: int | None
    worker_id: str | None = None
    poll_interval_seconds: float | None = None


@dataclass(slots=True)
class JobsPingResult:
    """Ping report to render in CLI."""

    lines: list[str]
    success: bool


class JobsCliController:
    """Coordinates queue, worker, and inspection CLI operations."""

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            page = repository.list_jobs(
                status=status_filter,
                job_type=command.job_type,
                limit=command.limit,
                offset=command.offset,
            )

        if command.as_json:
            return [_to_json(page.to_payload())]

        lines = [f"Jobs ({page.total} total)"]
        if command.status:
            lines.append(f"Filter: status={command.status}")
        if command.job_type:
            lines.append(f"Filter: type={command.job_type}")
        if not page.entries:
            lines.append("No jobs found matching filters.")
            return lines

        lines.append(f"  {'ID':<6} {'Type':<20} {'Status':<10} {'Created':<20} Duration")
        lines.extend(_format_job_row(job) for job in page.entries)
        remaining = page.total - page.offset - len(page.entries)
        if remaining > 0:
            lines.append(f"...and {remaining} more. Use --limit/--offset to see more.")
        return lines

    def create_job(self, command: JobsCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        params = _parse_params(command.params_json)
        with _repository(settings) as repository:
            job = repository.create_job(
                JobCreate(
                    type=command.job_type,
                    params=params,
                    priority=command.priority,
                    max_retries=command.max_retries,
                ),
            )

        if command.as_json:
            return [_to_json(job.to_payload())]

        lines = [
            f"Created job #{job.id}",
            f"  Type: {job.type}",
            f"  Priority: {job.priority}",
            f"  Max retries: {job.max_retries}",
        ]
        if params:
            lines.append(f"  Params: {json.dumps(params, ensure_ascii=False)}")
        return lines

    def job_status(self, command: JobsInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(command.job_id)
        if job is None:
            raise JobNotFoundError(command.job_id)

        if command.as_json:
            return [_to_json(job.to_payload())]

        lines = [
            f"Job #{job.id}",
            f"  Type:       {job.type}",
            f"  Status:     {job.status.value}",
            f"  Priority:   {job.priority}",
            f"  Retries:    {job.retries} / {job.max_retries}",
            f"  Worker:     {job.worker_id or '-'}",
            f"  Created:    {_format_timestamp(job.created_at)}",
            f"  Claimed:    {_format_timestamp(job.claimed_at)}",
            f"  Started:    {_format_timestamp(job.started_at)}",
            f"  Completed:  {_format_timestamp(job.completed_at)}",
            f"  Duration:   {format_duration(job.started_at, job.completed_at)}",
        ]
        if job.retry_not_before is not None and job.status is JobStatus.PENDING:
            lines.append(f"  Not before: {_format_timestamp(job.retry_not_before)}")
        if job.params:
            lines.extend(["", "  Params:", *_indented_json(job.params)])
        if job.result:
            lines.extend(["", "  Result:", *_indented_json(job.result)])
        if job.error:
            lines.extend(["", "  Error:", f"  {job.error}"])
        return lines

    def cancel_job(self, command: JobsInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.cancel_job(job_id=command.job_id)
        if command.as_json:
            return [_to_json(job.to_payload())]
        return [f"Cancelled job #{job.id}"]

    def retry_job(self, command: JobsInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.retry_job(job_id=command.job_id)

        if command.as_json:
            return [_to_json(job.to_payload())]
        if job.id != command.job_id:
            return [f"Job #{command.job_id} resubmitted as new job #{job.id}"]
        if job.status is JobStatus.PENDING:
            return [
                f"Job #{job.id} reset to pending for retry ({job.retries}/{job.max_retries})",
            ]
        return [f"Job #{job.id} failed permanently: retries exhausted ({job.retries})"]

    def sweep(self, command: JobsSweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lease_seconds = (
            command.timeout_minutes * 60
            if command.timeout_minutes is not None
            else settings.queue.lease_timeout_seconds
        )
        with _repository(settings) as repository:
            result = StaleJobSweeper(
                repository,
                lease_timeout_seconds=lease_seconds,
            ).sweep_once()

        if command.as_json:
            return [_to_json(result.to_payload())]
        if result.swept == 0:
            return ["No stale jobs found."]
        return [
            f"Swept {result.swept} stale job(s) back to pending:",
            *(f"  #{job.id} ({job.type})" for job in result.jobs),
        ]

    def stats(self, command: JobsStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.stats()
        if command.as_json:
            return [_to_json(stats.to_payload())]
        return render_stats_lines(stats)

    def submit_batch(self, command: JobsBatchCommand) -> list[str]:
        child_type = BATCH_CHILD_TYPES.get(command.action)
        if child_type is None:
            raise ValueError(
                f"Unsupported batch action: {command.action!r}. "
                f"Expected one of: {', '.join(sorted(BATCH_CHILD_TYPES))}",
            )
        items = [item.strip() for item in command.items if item.strip()]
        if not items:
            raise ValueError("Batch requires at least one item.")

        key = "pageId" if command.action == "improve" else "title"
        pr_title = command.pr_title or f"Batch {command.action}: {len(items)} page(s)"
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            submission = BatchOrchestrator(repository).submit(
                BatchRequest(
                    child_type=child_type,
                    child_params=[{key: item} for item in items],
                    pr_title=pr_title,
                    pr_body=command.pr_body,
                    branch_name=command.branch_name,
                    pr_labels=list(command.labels),
                    batch_id=command.batch_id,
                    priority=command.priority,
                    max_retries=command.max_retries,
                ),
            )

        if command.as_json:
            return [_to_json(submission.to_payload())]
        return [
            f"Batch {submission.batch_id} submitted",
            f"  Child jobs ({child_type}): "
            + ", ".join(f"#{child.id}" for child in submission.children),
            f"  Commit job: #{submission.commit.id} ({submission.commit.type})",
        ]

    def run_worker(self, command: JobsWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.worker_id:
            settings.worker.worker_id = command.worker_id
        if command.poll_interval_seconds is not None:
            settings.worker.poll_interval_seconds = command.poll_interval_seconds
        settings.validate()

        registry = default_registry(settings)
        if command.job_type is not None and not registry.is_known(command.job_type):
            raise ValueError(
                f"Unknown job type: {command.job_type}. "
                f"Known types: {', '.join(registry.types())}",
            )
        with _repository(settings) as repository:
            worker = JobWorker(
                repository=repository,
                registry=registry,
                worker_id=settings.worker.worker_id,
                job_type=command.job_type,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                lease_timeout_seconds=settings.queue.lease_timeout_seconds,
                sweep_on_claim=settings.worker.sweep_on_claim,
                defer_seconds=settings.batch.poll_seconds,
                max_defer_seconds=settings.worker.max_defer_seconds,
            )
            summary = worker.run_loop(max_jobs=command.max_jobs, poll=command.poll)

        return [
            f"Worker summary ({settings.worker.worker_id}): "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} retried={summary.retried} "
            f"deferred={summary.deferred} skipped={summary.skipped} "
            f"swept={summary.swept} idle_polls={summary.idle_polls}",
        ]

    def handler_types(self) -> list[str]:
        settings = Settings.from_env()
        registry = default_registry(settings)
        return [f"Registered job types ({len(registry)}):", *(f"  {name}" for name in registry)]

    def ping(self, db_path: Path | None) -> JobsPingResult:
        """Create a ping job and run it inline with a ping-only worker."""

        settings = Settings.from_env(db_path=db_path)
        registry = default_registry(settings)
        with _repository(settings) as repository:
            job = repository.create_job(JobCreate(type=PING_JOB_TYPE, priority=PING_PRIORITY))
            lines = [f"Created ping job #{job.id}"]
            worker = JobWorker(
                repository=repository,
                registry=registry,
                worker_id=settings.worker.worker_id,
                job_type=PING_JOB_TYPE,
                sweep_on_claim=False,
            )
            current: JobView | None = job
            for _ in range(PING_MAX_ATTEMPTS):
                worker.run_once()
                current = repository.get_job(job.id)
                if current is None or current.status.is_terminal:
                    break

        if current is not None and current.status is JobStatus.COMPLETED:
            lines.append(f"Ping job #{job.id} completed successfully!")
            lines.append(f"  Duration: {format_duration(current.started_at, current.completed_at)}")
            if current.result:
                lines.append(f"  Result: {json.dumps(current.result, ensure_ascii=False)}")
            return JobsPingResult(lines=lines, success=True)

        status = current.status.value if current is not None else "missing"
        error = current.error if current is not None and current.error else "-"
        lines.append(f"Ping job #{job.id} did not complete (status={status}, error={error})")
        return JobsPingResult(lines=lines, success=False)


def format_duration(started_at: datetime | None, completed_at: datetime | None) -> str:
    """Compact elapsed time: ``850ms``, ``12.3s`` or ``4m 5s``."""

    if started_at is None or completed_at is None:
        return "-"
    elapsed_ms = int((completed_at - started_at) / timedelta(milliseconds=1))
    if elapsed_ms < 1000:
        return f"{elapsed_ms}ms"
    if elapsed_ms < 60_000:
        return f"{elapsed_ms / 1000:.1f}s"
    minutes, remainder_ms = divmod(elapsed_ms, 60_000)
    return f"{minutes}m {round(remainder_ms / 1000)}s"


def _format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _format_job_row(job: JobView) -> str:
    retries = f" [retry {job.retries}/{job.max_retries}]" if job.retries > 0 else ""
    error = f" {job.error[:MAX_LISTED_ERROR_CHARS]}" if job.error else ""
    return (
        f"  {job.id:<6} {job.type:<20} {job.status.value:<10} "
        f"{_format_timestamp(job.created_at):<20} "
        f"{format_duration(job.started_at, job.completed_at)}{retries}{error}"
    )


def _indented_json(payload: dict[str, Any]) -> list[str]:
    return [f"  {line}" for line in _to_json(payload).splitlines()]


def _to_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _parse_params(value: str | None) -> dict[str, Any] | None:
    if value is None or not value.strip():
        return None
    try:
        params = json.loads(value)
    except json.JSONDecodeError as error:
        raise ValueError(f"--params must be valid JSON: {error}") from error
    if not isinstance(params, dict):
        raise ValueError("--params must be a JSON object.")
    return params


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        default_max_retries=settings.queue.default_max_retries,
        retry_backoff_seconds=settings.queue.retry_backoff_seconds,
        retry_backoff_max_seconds=settings.queue.retry_backoff_max_seconds,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()
