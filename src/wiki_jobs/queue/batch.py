"""Two-level batch pattern: fan out content jobs, fan in with one batch-commit job."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from wiki_jobs.queue.errors import JobValidationError
from wiki_jobs.queue.models import JobCreate, JobStatus, JobView
from wiki_jobs.queue.repository import JobRepository
from wiki_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)

BATCH_COMMIT_JOB_TYPE = "batch-commit"
MAX_BRANCH_NAME_LENGTH = 100
MAX_LISTED_ERRORS = 10


@dataclass(slots=True)
class BatchRequest:
    """Fan-out request: one child job per params entry plus a commit job."""

    child_type: str
    child_params: list[dict[str, Any]]
    pr_title: str
    pr_body: str | None = None
    branch_name: str | None = None
    pr_labels: list[str] = field(default_factory=list)
    batch_id: str | None = None
    priority: int = 0
    max_retries: int | None = None


@dataclass(slots=True)
class BatchSubmission:
    """Jobs created for one batch."""

    batch_id: str
    children: list[JobView]
    commit: JobView

    def to_payload(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "childJobIds": [child.id for child in self.children],
            "commitJobId": self.commit.id,
            "children": [child.to_payload() for child in self.children],
            "commitJob": self.commit.to_payload(),
        }


class BatchOrchestrator:
    """Creates batches atomically on top of the job store."""

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def submit(self, request: BatchRequest) -> BatchSubmission:
        if not request.child_params:
            raise JobValidationError("Batch must contain at least one item.")
        if not request.pr_title.strip():
            raise JobValidationError("Batch requires a non-empty PR title.")

        batch_id = request.batch_id or generate_batch_id(request.child_type)
        children = [
            JobCreate(
                type=request.child_type,
                params={**params, "batchId": batch_id},
                priority=request.priority,
                max_retries=request.max_retries,
            )
            for params in request.child_params
        ]

        def build_commit(child_ids: list[int]) -> JobCreate:
            params: dict[str, Any] = {
                "batchId": batch_id,
                "childJobIds": child_ids,
                "prTitle": request.pr_title,
                "prLabels": list(request.pr_labels),
            }
            if request.pr_body:
                params["prBody"] = request.pr_body
            if request.branch_name:
                params["branchName"] = request.branch_name
            return JobCreate(
                type=BATCH_COMMIT_JOB_TYPE,
                params=params,
                priority=request.priority - 1,
                max_retries=request.max_retries,
            )

        child_views, commit_view = self.repository.create_fan_out(children, build_commit)
        logger.info(
            "Batch %s submitted: %d %s jobs, commit job #%d",
            batch_id,
            len(child_views),
            request.child_type,
            commit_view.id,
        )
        return BatchSubmission(batch_id=batch_id, children=child_views, commit=commit_view)


def generate_batch_id(kind: str) -> str:
    """Readable unique batch id, e.g. ``page-improve-2026-10-17-1a2b3c4d``."""

    prefix = re.sub(r"[^a-zA-Z0-9-]+", "-", kind).strip("-") or "batch"
    return f"{prefix}-{utc_now().date().isoformat()}-{uuid4().hex[:8]}"


# --- fan-in aggregation -------------------------------------------------------


@dataclass(slots=True)
class FileChange:
    """One file write (``content``) or deletion (``content is None``)."""

    path: str
    content: str | None

    def to_payload(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content}


@dataclass(slots=True)
class ChildSummary:
    id: int
    type: str
    status: str
    page_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "type": self.type, "status": self.status}
        if self.page_id is not None:
            payload["pageId"] = self.page_id
        return payload


@dataclass(slots=True)
class BatchAggregate:
    """Merged outcome of all children of one batch."""

    batch_id: str
    child_job_ids: list[int]
    branch: str
    pr_title: str
    pr_body: str | None
    pr_labels: list[str]
    file_changes: list[FileChange]
    job_summaries: list[ChildSummary]
    errors: list[str]

    @property
    def completed(self) -> int:
        return sum(1 for job in self.job_summaries if job.status == JobStatus.COMPLETED.value)

    @property
    def failed(self) -> int:
        return sum(1 for job in self.job_summaries if job.status == JobStatus.FAILED.value)


def find_unfinished_children(children: dict[int, JobView | None]) -> list[JobView]:
    """Children that still exist and are not terminal."""

    return [job for job in children.values() if job is not None and not job.status.is_terminal]


def aggregate_batch(  # noqa: PLR0913
    *,
    batch_id: str,
    children: dict[int, JobView | None],
    pr_title: str,
    pr_body: str | None = None,
    branch_name: str | None = None,
    pr_labels: list[str] | None = None,
) -> BatchAggregate:
    """Merge terminal children in id order; later children win for the same path."""

    merged: dict[str, FileChange] = {}
    summaries: list[ChildSummary] = []
    errors: list[str] = []

    for job_id, job in children.items():
        if job is None:
            errors.append(f"Job #{job_id} not found")
            summaries.append(ChildSummary(id=job_id, type="unknown", status="missing"))
            continue

        result = job.result or {}
        page_id = result.get("pageId") if isinstance(result.get("pageId"), str) else None
        summaries.append(
            ChildSummary(id=job.id, type=job.type, status=job.status.value, page_id=page_id),
        )

        if job.status is JobStatus.FAILED:
            errors.append(f"Job #{job.id} ({job.type}) failed: {job.error or 'unknown error'}")
            continue
        if job.status is not JobStatus.COMPLETED:
            errors.append(f"Job #{job.id} ({job.type}) not completed (status: {job.status.value})")
            continue

        for change in _parse_file_changes(job, errors):
            merged.pop(change.path, None)
            merged[change.path] = change

    return BatchAggregate(
        batch_id=batch_id,
        child_job_ids=list(children),
        branch=sanitize_branch_name(branch_name or f"batch/{batch_id}"),
        pr_title=pr_title,
        pr_body=pr_body,
        pr_labels=list(pr_labels or []),
        file_changes=list(merged.values()),
        job_summaries=summaries,
        errors=errors,
    )


def _parse_file_changes(job: JobView, errors: list[str]) -> list[FileChange]:
    raw_changes = (job.result or {}).get("fileChanges") or []
    if not isinstance(raw_changes, list):
        errors.append(f"Job #{job.id} ({job.type}) has malformed fileChanges")
        return []

    changes: list[FileChange] = []
    for entry in raw_changes:
        if (
            not isinstance(entry, dict)
            or not isinstance(entry.get("path"), str)
            or not entry["path"]
            or not isinstance(entry.get("content"), str | None)
        ):
            errors.append(f"Job #{job.id} ({job.type}) has a malformed file change: {entry!r}")
            continue
        changes.append(FileChange(path=entry["path"], content=entry.get("content")))
    return changes


def sanitize_branch_name(name: str) -> str:
    """Make ``name`` safe to use as a git ref."""

    branch = re.sub(r"[^a-zA-Z0-9\-_/]", "-", name)
    branch = re.sub(r"\.{2,}", "-", branch)
    branch = re.sub(r"/{2,}", "/", branch)
    branch = re.sub(r"^[.\-/]+", "", branch)
    branch = re.sub(r"[.\-/]+$", "", branch)
    return branch[:MAX_BRANCH_NAME_LENGTH]


def render_pr_body(aggregate: BatchAggregate, *, files_changed: int) -> str:
    """Markdown pull-request description for a batch."""

    lines = ["## Summary", ""]
    if aggregate.pr_body:
        lines.extend([aggregate.pr_body, ""])
    lines.extend(
        [
            f"- **Batch**: `{aggregate.batch_id}`",
            f"- **Files changed**: {files_changed}",
            "",
            "## Job Results",
            "",
            "| Job | Type | Status | Page |",
            "|-----|------|--------|------|",
        ],
    )
    for job in aggregate.job_summaries:
        lines.append(f"| #{job.id} | {job.type} | {job.status} | {job.page_id or '-'} |")
    lines.extend(
        [
            "",
            f"**{aggregate.completed}/{len(aggregate.job_summaries)}** jobs completed successfully.",
        ],
    )

    if aggregate.errors:
        lines.extend(["", "## Errors", ""])
        lines.extend(f"- {error}" for error in aggregate.errors[:MAX_LISTED_ERRORS])
        hidden = len(aggregate.errors) - MAX_LISTED_ERRORS
        if hidden > 0:
            lines.append(f"- ...and {hidden} more")
    return "\n".join(lines)
