"""Queue worker: claim, start, execute, and report jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from wiki_jobs.handlers.registry import (
    HandlerRegistry,
    JobDeferred,
    JobHandlerContext,
)
from wiki_jobs.queue.errors import JobValidationError
from wiki_jobs.queue.models import JobStatus, JobView
from wiki_jobs.queue.repository import JobRepository
from wiki_jobs.queue.sweeper import StaleJobSweeper
from wiki_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    skipped: int = 0
    swept: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.retried += other.retried
        self.deferred += other.deferred
        self.skipped += other.skipped
        self.swept += other.swept
        self.idle_polls += other.idle_polls


class JobWorker:
    """Consumes pending jobs and dispatches them to registered handlers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: HandlerRegistry,
        worker_id: str,
        job_type: str | None = None,
        poll_interval_seconds: float = 30.0,
        lease_timeout_seconds: float = 3600.0,
        sweep_on_claim: bool = True,
        defer_seconds: float = 60.0,
        max_defer_seconds: float = 86_400.0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.job_type = job_type
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_timeout_seconds = lease_timeout_seconds
        self.sweep_on_claim = sweep_on_claim
        self.defer_seconds = defer_seconds
        self.max_defer_seconds = max_defer_seconds
        # Kept across polls so repeated sweeps of one job escalate to an error.
        self.sweeper = StaleJobSweeper(repository, lease_timeout_seconds=lease_timeout_seconds)
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        if self.sweep_on_claim:
            summary.swept = self.sweeper.sweep_once().swept

        claimed = self.repository.claim_next_job(worker_id=self.worker_id, job_type=self.job_type)
        if claimed is None:
            summary.idle_polls = 1
            return summary

        job = self.repository.start_job(job_id=claimed.id, worker_id=self.worker_id)
        if job is None:
            logger.info("Job #%d was claimed but could not be started; skipping", claimed.id)
            summary.skipped = 1
            return summary

        summary.processed = 1
        logger.info("Worker %s running job #%d (%s)", self.worker_id, job.id, job.type)

        handler = self.registry.get(job.type)
        if handler is None:
            known = ", ".join(self.registry.types()) or "none"
            self._record_failure(
                job,
                f"Unknown job type: {job.type}. Known types: {known}",
                summary,
            )
            return summary

        context = JobHandlerContext(job=job, worker_id=self.worker_id, repository=self.repository)
        started = time.monotonic()
        try:
            output = handler.execute(dict(job.params or {}), context)
        except JobDeferred as deferral:
            self._record_deferral(job, deferral, summary)
            return summary
        except Exception as error:  # noqa: BLE001
            self._record_failure(job, _error_message(error), summary)
            return summary

        result = _normalize_result(output)
        try:
            completed = self.repository.complete_job(
                job_id=job.id,
                result=result,
                worker_id=self.worker_id,
            )
        except JobValidationError as error:
            self._record_failure(job, _error_message(error), summary)
            return summary

        if completed is None:
            logger.warning(
                "Job #%d finished but is no longer owned by %s; result discarded",
                job.id,
                self.worker_id,
            )
            summary.skipped = 1
            return summary

        summary.completed = 1
        logger.info(
            "Job #%d (%s) completed in %dms",
            job.id,
            job.type,
            int((time.monotonic() - started) * 1000),
        )
        return summary

    def run_loop(self, *, max_jobs: int | None = None, poll: bool = False) -> WorkerRunSummary:
        """Run until the queue is empty, or keep polling when ``poll`` is set.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            poll: Sleep ``poll_interval_seconds`` on an empty queue instead of exiting.
        """

        aggregate = WorkerRunSummary()
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    if self._stop_signal_name is not None:
                        logger.info(
                            "Worker %s stopped by %s after %d job(s)",
                            self.worker_id,
                            self._stop_signal_name,
                            aggregate.processed,
                        )
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0 and summary.skipped == 0:
                    if not poll:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)

    def request_stop(self) -> None:
        """Finish the current job, then leave ``run_loop``."""

        self._stop_requested = True

    def _record_failure(self, job: JobView, message: str, summary: WorkerRunSummary) -> None:
        message = message[:MAX_ERROR_CHARS]
        updated = self.repository.fail_job(job_id=job.id, error=message, worker_id=self.worker_id)
        if updated is None:
            logger.warning("Job #%d failed but is no longer owned by %s", job.id, self.worker_id)
            summary.skipped = 1
            return
        if updated.status is JobStatus.PENDING:
            summary.retried = 1
            logger.warning(
                "Job #%d (%s) failed, retry %d/%d: %s",
                job.id,
                job.type,
                updated.retries,
                updated.max_retries,
                message,
            )
            return
        summary.failed = 1
        logger.error("Job #%d (%s) failed permanently: %s", job.id, job.type, message)

    def _record_deferral(
        self,
        job: JobView,
        deferral: JobDeferred,
        summary: WorkerRunSummary,
    ) -> None:
        delay = (
            deferral.retry_after_seconds
            if deferral.retry_after_seconds is not None
            else self.defer_seconds
        )
        reason = _error_message(deferral)
        age_seconds = (utc_now() - job.created_at).total_seconds()
        if age_seconds >= self.max_defer_seconds:
            self._record_failure(
                job,
                f"Deferred past the {self.max_defer_seconds:.0f}s limit: {reason}",
                summary,
            )
            return
        updated = self.repository.defer_job(
            job_id=job.id,
            reason=reason,
            not_before=utc_now() + timedelta(seconds=max(0.0, delay)),
            worker_id=self.worker_id,
        )
        if updated is None:
            summary.skipped = 1
            return
        summary.deferred = 1
        logger.info("Job #%d (%s) deferred for %.0fs: %s", job.id, job.type, delay, reason)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Worker %s received %s; stopping after current job", self.worker_id, signal_name)


def _error_message(error: BaseException) -> str:
    message = str(error) or type(error).__name__
    return message[:MAX_ERROR_CHARS]


def _normalize_result(output: Any) -> dict[str, Any]:
    if output is None:
        return {}
    if isinstance(output, dict):
        return output
    return {"value": output}
