"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.CLAIMED, JobStatus.RUNNING})


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating one job."""

    type: str
    params: dict[str, Any] | None = None
    priority: int = 0
    max_retries: int | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI, worker, and handler logic."""

    id: int
    type: str
    status: JobStatus
    params: dict[str, Any] | None
    result: dict[str, Any] | None
    error: str | None
    priority: int
    retries: int
    max_retries: int
    worker_id: str | None
    retry_not_before: datetime | None
    created_at: datetime
    claimed_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the external JSON shape."""

        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "params": self.params,
            "result": self.result,
            "error": self.error,
            "priority": self.priority,
            "retries": self.retries,
            "maxRetries": self.max_retries,
            "workerId": self.worker_id,
            "retryNotBefore": _iso(self.retry_not_before),
            "createdAt": _iso(self.created_at),
            "claimedAt": _iso(self.claimed_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }


@dataclass(slots=True)
class JobListPage:
    """One page of jobs plus the total matching the filter."""

    entries: list[JobView]
    total: int
    limit: int
    offset: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "entries": [entry.to_payload() for entry in self.entries],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(slots=True)
class SweepResult:
    """Jobs returned to the claim pool by one sweep."""

    swept: int
    jobs: list[JobView] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "swept": self.swept,
            "jobs": [{"id": job.id, "type": job.type} for job in self.jobs],
        }


@dataclass(slots=True)
class JobTypeStats:
    """Aggregates for one job type."""

    by_status: dict[str, int]
    avg_duration_ms: int | None = None
    failure_rate: float | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"byStatus": dict(self.by_status)}
        if self.avg_duration_ms is not None:
            payload["avgDurationMs"] = self.avg_duration_ms
        if self.failure_rate is not None:
            payload["failureRate"] = self.failure_rate
        return payload


@dataclass(slots=True)
class JobStats:
    """Queue-wide statistics."""

    total_jobs: int
    by_type: dict[str, JobTypeStats]

    def to_payload(self) -> dict[str, Any]:
        return {
            "totalJobs": self.total_jobs,
            "byType": {job_type: stats.to_payload() for job_type, stats in self.by_type.items()},
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
