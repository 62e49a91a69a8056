"""Periodic reclamation of jobs whose lease expired."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import timedelta

from wiki_jobs.queue.models import SweepResult
from wiki_jobs.queue.repository import JobRepository

logger = logging.getLogger(__name__)


class StaleJobSweeper:
    """Returns claimed/running jobs older than the lease timeout to pending.

    A job that keeps getting swept is most likely killing its worker; after
    ``alert_after`` sweeps of the same job an error is logged.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        lease_timeout_seconds: float = 3600.0,
        interval_seconds: float = 300.0,
        alert_after: int = 3,
    ) -> None:
        if lease_timeout_seconds <= 0:
            raise ValueError("lease_timeout_seconds must be > 0.")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0.")
        self.repository = repository
        self.lease_timeout = timedelta(seconds=lease_timeout_seconds)
        self.interval_seconds = interval_seconds
        self.alert_after = alert_after
        self._sweep_counts: Counter[int] = Counter()
        self._stop = threading.Event()

    def sweep_once(self) -> SweepResult:
        result = self.repository.sweep_stale_jobs(lease_timeout=self.lease_timeout)
        self._forget_finished_jobs(keep={job.id for job in result.jobs})
        for job in result.jobs:
            self._sweep_counts[job.id] += 1
            count = self._sweep_counts[job.id]
            if count >= self.alert_after:
                logger.error(
                    "Job #%d (%s) has been swept %d times; its handler may be crashing workers",
                    job.id,
                    job.type,
                    count,
                )
            else:
                logger.warning("Reset stale job #%d (%s) to pending", job.id, job.type)
        return result

    def run_loop(self, *, max_runs: int | None = None) -> int:
        """Sweep every ``interval_seconds`` until stopped; returns total swept."""

        total = 0
        runs = 0
        while not self._stop.is_set():
            total += self.sweep_once().swept
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            self._stop.wait(self.interval_seconds)
        return total

    def stop(self) -> None:
        self._stop.set()

    def _forget_finished_jobs(self, *, keep: set[int]) -> None:
        # Counts for terminal or deleted jobs can never trigger another alert.
        for job_id in list(self._sweep_counts):
            if job_id in keep:
                continue
            job = self.repository.get_job(job_id)
            if job is None or job.status.is_terminal:
                del self._sweep_counts[job_id]
