"""Runtime configuration for the job queue, workers, and batches."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(slots=True)
class QueueSettings:
    """Job store policy settings."""

    default_max_retries: int = 3
    retry_backoff_seconds: float = 0.0
    retry_backoff_max_seconds: float = 900.0
    lease_timeout_seconds: int = 3_600


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str = field(default_factory=lambda: default_worker_id())
    poll_interval_seconds: float = 30.0
    sweep_on_claim: bool = True
    max_defer_seconds: float = 86_400.0


@dataclass(slots=True)
class BatchSettings:
    """Batch fan-in settings."""

    poll_seconds: float = 60.0
    wait_timeout_seconds: float = 21_600.0
    project_root: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".wiki_jobs.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    handler_specs: str = ""

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        project_root = os.getenv("WIKI_JOBS_PROJECT_ROOT", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("WIKI_JOBS_DB_PATH", ".wiki_jobs.db")),
            sqlite_busy_timeout_ms=_env_int("WIKI_JOBS_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            queue=QueueSettings(
                default_max_retries=_env_int("WIKI_JOBS_DEFAULT_MAX_RETRIES", 3),
                retry_backoff_seconds=_env_float("WIKI_JOBS_RETRY_BACKOFF_SECONDS", 0.0),
                retry_backoff_max_seconds=_env_float(
                    "WIKI_JOBS_RETRY_BACKOFF_MAX_SECONDS",
                    900.0,
                ),
                lease_timeout_seconds=_env_int("WIKI_JOBS_LEASE_TIMEOUT_SECONDS", 3_600),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("WIKI_JOBS_WORKER_ID", "").strip() or default_worker_id(),
                poll_interval_seconds=_env_float("WIKI_JOBS_POLL_INTERVAL_SECONDS", 30.0),
                sweep_on_claim=_env_bool("WIKI_JOBS_SWEEP_ON_CLAIM", default=True),
                max_defer_seconds=_env_float("WIKI_JOBS_MAX_DEFER_SECONDS", 86_400.0),
            ),
            batch=BatchSettings(
                poll_seconds=_env_float("WIKI_JOBS_BATCH_POLL_SECONDS", 60.0),
                wait_timeout_seconds=_env_float("WIKI_JOBS_BATCH_WAIT_TIMEOUT_SECONDS", 21_600.0),
                project_root=Path(project_root) if project_root else None,
            ),
            handler_specs=os.getenv("WIKI_JOBS_HANDLERS", "").strip(),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("WIKI_JOBS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not 0 <= self.queue.default_max_retries <= 100:
            raise ValueError("WIKI_JOBS_DEFAULT_MAX_RETRIES must be between 0 and 100.")
        if self.queue.retry_backoff_seconds < 0:
            raise ValueError("WIKI_JOBS_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.queue.retry_backoff_max_seconds < self.queue.retry_backoff_seconds:
            raise ValueError(
                "WIKI_JOBS_RETRY_BACKOFF_MAX_SECONDS must be >= WIKI_JOBS_RETRY_BACKOFF_SECONDS.",
            )
        if self.queue.lease_timeout_seconds <= 0:
            raise ValueError("WIKI_JOBS_LEASE_TIMEOUT_SECONDS must be > 0.")
        if not self.worker.worker_id:
            raise ValueError("WIKI_JOBS_WORKER_ID must not be empty.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("WIKI_JOBS_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.max_defer_seconds <= 0:
            raise ValueError("WIKI_JOBS_MAX_DEFER_SECONDS must be > 0.")
        if self.batch.poll_seconds <= 0:
            raise ValueError("WIKI_JOBS_BATCH_POLL_SECONDS must be > 0.")
        if self.batch.wait_timeout_seconds <= 0:
            raise ValueError("WIKI_JOBS_BATCH_WAIT_TIMEOUT_SECONDS must be > 0.")
        if self.batch.project_root is not None and not self.batch.project_root.is_dir():
            raise ValueError(
                f"WIKI_JOBS_PROJECT_ROOT is not a directory: {self.batch.project_root}",
            )


def default_worker_id() -> str:
    """``worker-<pid>-<base36 epoch millis>``."""

    return f"worker-{os.getpid()}-{_to_base36(int(time.time() * 1000))}"


def _to_base36(value: int) -> str:
    digits: list[str] = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
        if value == 0:
            break
    return "".join(reversed(digits))


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
