"""Queue-level error taxonomy.

Handler failures are not part of this hierarchy: they are captured into job state
by the worker (see ``wiki_jobs.handlers.registry.HandlerError``).
"""

from __future__ import annotations


class JobQueueError(RuntimeError):
    """Base class for errors reported by the job store."""


class StoreUnavailableError(JobQueueError):
    """The job store could not be reached or is locked beyond the busy timeout."""


class JobNotFoundError(JobQueueError):
    """No job exists with the requested id."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job not found: #{job_id}")
        self.job_id = job_id


class InvalidTransitionError(JobQueueError):
    """The requested transition is not allowed from the job's current status."""


class JobValidationError(JobQueueError, ValueError):
    """Rejected job input (type, params, priority, retries, batch item)."""
