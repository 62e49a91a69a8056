"""Fan-in handler: waits for a batch's children, then merges and publishes them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from wiki_jobs.handlers.publishers import BatchPublisher, NullPublisher
from wiki_jobs.handlers.registry import HandlerError, JobDeferred, JobHandlerContext
from wiki_jobs.queue.batch import aggregate_batch, find_unfinished_children, render_pr_body
from wiki_jobs.queue.models import JobView
from wiki_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchCommitParams:
    batch_id: str
    child_job_ids: list[int]
    pr_title: str
    pr_body: str | None = None
    branch_name: str | None = None
    pr_labels: list[str] = field(default_factory=list)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> BatchCommitParams:
        batch_id = params.get("batchId")
        if not isinstance(batch_id, str) or not batch_id:
            raise HandlerError("Missing required param: batchId")

        child_job_ids = params.get("childJobIds")
        if (
            not isinstance(child_job_ids, list)
            or not child_job_ids
            or any(isinstance(item, bool) or not isinstance(item, int) for item in child_job_ids)
        ):
            raise HandlerError(
                "Missing required param: childJobIds (must be a non-empty list of job ids)",
            )

        pr_title = params.get("prTitle")
        if not isinstance(pr_title, str) or not pr_title:
            raise HandlerError("Missing required param: prTitle")

        labels = params.get("prLabels") or []
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            raise HandlerError("prLabels must be a list of strings")

        pr_body = params.get("prBody")
        branch_name = params.get("branchName")
        return cls(
            batch_id=batch_id,
            child_job_ids=list(child_job_ids),
            pr_title=pr_title,
            pr_body=pr_body if isinstance(pr_body, str) else None,
            branch_name=branch_name if isinstance(branch_name, str) and branch_name else None,
            pr_labels=list(labels),
        )


class BatchCommitHandler:
    """Aggregates a batch once every child is terminal.

    While children are still pending or running the job is deferred without consuming
    a retry. Once the commit job is older than ``wait_timeout_seconds`` a remaining
    unfinished child fails the attempt instead, so the retry ceiling bounds the wait.
    """

    def __init__(
        self,
        publisher: BatchPublisher | None = None,
        *,
        wait_timeout_seconds: float = 21600.0,
        poll_seconds: float = 60.0,
    ) -> None:
        self.publisher = publisher or NullPublisher()
        self.wait_timeout_seconds = wait_timeout_seconds
        self.poll_seconds = poll_seconds

    def execute(self, params: dict[str, Any], context: JobHandlerContext) -> dict[str, Any]:
        commit = BatchCommitParams.from_params(params)
        children: dict[int, JobView | None] = {
            job_id: context.repository.get_job(job_id) for job_id in commit.child_job_ids
        }

        unfinished = find_unfinished_children(children)
        if unfinished:
            waiting = ", ".join(f"#{job.id} ({job.status.value})" for job in unfinished)
            age_seconds = (utc_now() - context.job.created_at).total_seconds()
            if age_seconds >= self.wait_timeout_seconds:
                raise HandlerError(
                    f"Batch {commit.batch_id} timed out waiting for "
                    f"{len(unfinished)} child job(s): {waiting}",
                )
            raise JobDeferred(
                f"Waiting for {len(unfinished)} child job(s): {waiting}",
                retry_after_seconds=self.poll_seconds,
            )

        aggregate = aggregate_batch(
            batch_id=commit.batch_id,
            children=children,
            pr_title=commit.pr_title,
            pr_body=commit.pr_body,
            branch_name=commit.branch_name,
            pr_labels=commit.pr_labels,
        )
        logger.info(
            "Batch %s: %d completed, %d failed, %d file change(s)",
            aggregate.batch_id,
            aggregate.completed,
            aggregate.failed,
            len(aggregate.file_changes),
        )
        publication = self.publisher.publish(aggregate)
        errors = [*aggregate.errors, *(f"Apply error: {error}" for error in publication.errors)]
        aggregate.errors = errors

        return {
            "batchId": aggregate.batch_id,
            "childJobIds": aggregate.child_job_ids,
            "branch": aggregate.branch,
            "prTitle": aggregate.pr_title,
            "prLabels": aggregate.pr_labels,
            "filesChanged": len(aggregate.file_changes),
            "fileChanges": [change.to_payload() for change in aggregate.file_changes],
            "completed": aggregate.completed,
            "failed": aggregate.failed,
            "jobSummaries": [summary.to_payload() for summary in aggregate.job_summaries],
            "errors": errors,
            "prBody": render_pr_body(aggregate, files_changed=len(aggregate.file_changes)),
            "publication": publication.to_payload(),
        }
