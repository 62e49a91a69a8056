from pathlib import Path

import allure
from sqlalchemy import inspect, text

from wiki_jobs.queue.models import JobCreate
from wiki_jobs.queue.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
    assert version == "20261017_0002"

    columns = {column["name"] for column in inspect(repository.engine).get_columns("jobs")}
    assert {
        "id",
        "type",
        "status",
        "params",
        "result",
        "error",
        "priority",
        "retries",
        "max_retries",
        "worker_id",
        "retry_not_before",
        "created_at",
        "claimed_at",
        "started_at",
        "completed_at",
    } <= columns
    repository.close()


def test_init_schema_is_idempotent_and_keeps_data(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    job = repository.create_job(JobCreate(type="ping"))
    repository.close()

    reopened = JobRepository(db_path)
    reopened.init_schema()
    assert reopened.get_job(job.id) is not None
    reopened.close()
