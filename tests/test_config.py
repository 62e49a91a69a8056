from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest

from wiki_jobs.config import (
    BatchSettings,
    QueueSettings,
    Settings,
    WorkerSettings,
    default_worker_id,
)

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".wiki_jobs.db")
    assert settings.sqlite_busy_timeout_ms == 5000
    assert settings.queue.default_max_retries == 3
    assert settings.queue.retry_backoff_seconds == 0.0
    assert settings.queue.lease_timeout_seconds == 3600
    assert settings.worker.poll_interval_seconds == 30.0
    assert settings.worker.sweep_on_claim is True
    assert settings.worker.max_defer_seconds == 86400.0
    assert settings.batch.poll_seconds == 60.0
    assert settings.batch.wait_timeout_seconds == 21600.0
    assert settings.batch.project_root is None
    assert settings.handler_specs == ""
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WIKI_JOBS_DB_PATH", str(tmp_path / "queue.db"))
    monkeypatch.setenv("WIKI_JOBS_DEFAULT_MAX_RETRIES", "5")
    monkeypatch.setenv("WIKI_JOBS_RETRY_BACKOFF_SECONDS", "2.5")
    monkeypatch.setenv("WIKI_JOBS_LEASE_TIMEOUT_SECONDS", "600")
    monkeypatch.setenv("WIKI_JOBS_WORKER_ID", "  worker-ci  ")
    monkeypatch.setenv("WIKI_JOBS_SWEEP_ON_CLAIM", "off")
    monkeypatch.setenv("WIKI_JOBS_MAX_DEFER_SECONDS", "3600")
    monkeypatch.setenv("WIKI_JOBS_BATCH_POLL_SECONDS", "15")
    monkeypatch.setenv("WIKI_JOBS_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("WIKI_JOBS_HANDLERS", "page-improve=wiki_tools.handlers:ImproveHandler")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "queue.db"
    assert settings.queue.default_max_retries == 5
    assert settings.queue.retry_backoff_seconds == 2.5
    assert settings.queue.lease_timeout_seconds == 600
    assert settings.worker.worker_id == "worker-ci"
    assert settings.worker.sweep_on_claim is False
    assert settings.worker.max_defer_seconds == 3600.0
    assert settings.batch.poll_seconds == 15.0
    assert settings.batch.project_root == tmp_path
    assert settings.handler_specs == "page-improve=wiki_tools.handlers:ImproveHandler"
    settings.validate()


def test_explicit_db_path_wins_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WIKI_JOBS_DB_PATH", "/tmp/from-env.db")

    assert Settings.from_env(db_path=Path("cli.db")).db_path == Path("cli.db")


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("WIKI_JOBS_DEFAULT_MAX_RETRIES", "three", "Invalid integer value"),
        ("WIKI_JOBS_POLL_INTERVAL_SECONDS", "soon", "Invalid number"),
        ("WIKI_JOBS_SWEEP_ON_CLAIM", "maybe", "Invalid boolean value"),
    ],
)
def test_from_env_rejects_malformed_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(sqlite_busy_timeout_ms=0), "SQLITE_BUSY_TIMEOUT_MS"),
        (Settings(queue=QueueSettings(default_max_retries=101)), "DEFAULT_MAX_RETRIES"),
        (Settings(queue=QueueSettings(retry_backoff_seconds=-1)), "RETRY_BACKOFF_SECONDS"),
        (
            Settings(queue=QueueSettings(retry_backoff_seconds=60, retry_backoff_max_seconds=30)),
            "RETRY_BACKOFF_MAX_SECONDS",
        ),
        (Settings(queue=QueueSettings(lease_timeout_seconds=0)), "LEASE_TIMEOUT_SECONDS"),
        (Settings(worker=WorkerSettings(worker_id="")), "WORKER_ID"),
        (Settings(worker=WorkerSettings(poll_interval_seconds=0)), "POLL_INTERVAL_SECONDS"),
        (Settings(worker=WorkerSettings(max_defer_seconds=0)), "MAX_DEFER_SECONDS"),
        (Settings(batch=BatchSettings(poll_seconds=0)), "BATCH_POLL_SECONDS"),
        (Settings(batch=BatchSettings(wait_timeout_seconds=-5)), "BATCH_WAIT_TIMEOUT_SECONDS"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_rejects_missing_project_root(tmp_path: Path) -> None:
    settings = Settings(batch=BatchSettings(project_root=tmp_path / "missing"))

    with pytest.raises(ValueError, match="PROJECT_ROOT is not a directory"):
        settings.validate()


def test_default_worker_id_embeds_pid_and_clock() -> None:
    worker_id = default_worker_id()

    assert re.fullmatch(r"worker-\d+-[0-9a-z]+", worker_id)
