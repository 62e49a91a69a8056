"""Queue statistics aggregation and rendering."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from wiki_jobs.queue.models import JobStats, JobStatus, JobTypeStats


def build_job_stats(
    *,
    status_counts: list[tuple[str, str, int]],
    completed_durations: list[tuple[str, datetime, datetime]],
) -> JobStats:
    """Build per-type statistics from grouped counts and completed-job timings.

    ``status_counts`` holds ``(type, status, count)`` rows; ``completed_durations``
    holds ``(type, started_at, completed_at)`` for completed jobs.
    """

    by_status: dict[str, dict[str, int]] = defaultdict(dict)
    total = 0
    for job_type, status, count in status_counts:
        by_status[job_type][status] = count
        total += count

    durations_ms: dict[str, list[float]] = defaultdict(list)
    for job_type, started_at, completed_at in completed_durations:
        elapsed = (completed_at - started_at).total_seconds() * 1000
        durations_ms[job_type].append(max(0.0, elapsed))

    by_type: dict[str, JobTypeStats] = {}
    for job_type in sorted(by_status):
        counts = by_status[job_type]
        samples = durations_ms.get(job_type, [])
        completed = counts.get(JobStatus.COMPLETED.value, 0)
        failed = counts.get(JobStatus.FAILED.value, 0)
        by_type[job_type] = JobTypeStats(
            by_status=counts,
            avg_duration_ms=round(sum(samples) / len(samples)) if samples else None,
            failure_rate=(failed / (completed + failed)) if (completed + failed) else None,
        )
    return JobStats(total_jobs=total, by_type=by_type)


def render_stats_lines(stats: JobStats) -> list[str]:
    """Human-readable statistics block for the CLI."""

    lines = ["Job statistics", f"  Total jobs: {stats.total_jobs}"]
    if not stats.by_type:
        lines.append("No jobs recorded yet.")
        return lines

    for job_type, type_stats in stats.by_type.items():
        lines.append(f"  {job_type}")
        for status in JobStatus:
            count = type_stats.by_status.get(status.value)
            if count:
                lines.append(f"    {status.value}: {count}")
        if type_stats.avg_duration_ms is not None:
            lines.append(f"    Avg duration: {type_stats.avg_duration_ms}ms")
        if type_stats.failure_rate is not None:
            lines.append(f"    Failure rate: {type_stats.failure_rate:.1%}")
    return lines
