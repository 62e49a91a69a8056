"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update
from sqlmodel import Session, col

from wiki_jobs.queue.repository import JobRepository
from wiki_jobs.storage.common import to_db_datetime
from wiki_jobs.storage.sqlmodel_models import Job


@pytest.fixture(autouse=True)
def _clean_wiki_jobs_env(monkeypatch) -> None:
    """Keep developer WIKI_JOBS_* variables out of the tests."""

    for name in list(os.environ):
        if name.startswith("WIKI_JOBS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "jobs.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def set_job_fields() -> Callable[..., None]:
    """Write raw column values, bypassing the transition rules (for time travel)."""

    def _set(repository: JobRepository, job_id: int, **values: Any) -> None:
        normalized = {
            key: to_db_datetime(value) if hasattr(value, "tzinfo") else value
            for key, value in values.items()
        }
        with Session(repository.engine) as session:
            session.exec(update(Job).where(col(Job.id) == job_id).values(**normalized))
            session.commit()

    return _set
