from __future__ import annotations

from datetime import datetime

import allure
import pytest

from wiki_jobs.config import BatchSettings, Settings
from wiki_jobs.handlers import default_registry
from wiki_jobs.handlers.batch_commit import BatchCommitHandler
from wiki_jobs.handlers.ping import PingHandler
from wiki_jobs.handlers.publishers import FilesystemPublisher, NullPublisher
from wiki_jobs.handlers.registry import FunctionHandler, HandlerRegistry, JobHandlerContext
from wiki_jobs.queue.models import JobCreate
from wiki_jobs.queue.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Handler Registry"),
]


def test_register_wraps_plain_functions() -> None:
    registry = HandlerRegistry()
    registry.register("echo", lambda params, context: dict(params))

    handler = registry.get("echo")

    assert isinstance(handler, FunctionHandler)
    assert registry.is_known("echo")
    assert handler.execute({"a": 1}, None) == {"a": 1}


def test_register_rejects_duplicates_unless_replacing() -> None:
    registry = HandlerRegistry()
    registry.register("ping", PingHandler())

    with pytest.raises(ValueError, match="already registered"):
        registry.register("ping", PingHandler())

    replacement = PingHandler()
    registry.register("ping", replacement, replace=True)
    assert registry.get("ping") is replacement


def test_register_rejects_empty_type_and_non_handlers() -> None:
    registry = HandlerRegistry()

    with pytest.raises(ValueError):
        registry.register("  ", PingHandler())
    with pytest.raises(TypeError):
        registry.register("broken", object())


def test_registry_lists_types_sorted() -> None:
    registry = HandlerRegistry()
    registry.register("zeta", PingHandler())
    registry.register("alpha", PingHandler())

    assert registry.types() == ["alpha", "zeta"]
    assert list(registry) == ["alpha", "zeta"]
    assert len(registry) == 2
    assert registry.get("missing") is None


def test_load_from_spec_instantiates_classes() -> None:
    registry = HandlerRegistry()

    loaded = registry.load_from_spec(
        "health=wiki_jobs.handlers.ping:PingHandler, ,other=wiki_jobs.handlers.ping:PingHandler",
    )

    assert loaded == ["health", "other"]
    assert isinstance(registry.get("health"), PingHandler)


@pytest.mark.parametrize(
    ("entries", "message"),
    [
        ("no-separator", "expected type=module:attribute"),
        ("x=wiki_jobs.handlers.ping", "expected type=module:attribute"),
        ("x=wiki_jobs.does_not_exist:Handler", "Cannot import handler module"),
        ("x=wiki_jobs.handlers.ping:Missing", "not found in module"),
    ],
)
def test_load_from_spec_rejects_bad_entries(entries: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        HandlerRegistry().load_from_spec(entries)


def test_default_registry_has_builtin_handlers() -> None:
    registry = default_registry()

    assert registry.types() == ["batch-commit", "ping"]
    batch_handler = registry.get("batch-commit")
    assert isinstance(batch_handler, BatchCommitHandler)
    assert isinstance(batch_handler.publisher, NullPublisher)


def test_default_registry_applies_settings(tmp_path) -> None:
    settings = Settings(
        batch=BatchSettings(project_root=tmp_path, poll_seconds=5, wait_timeout_seconds=60),
        handler_specs="health=wiki_jobs.handlers.ping:PingHandler",
    )

    registry = default_registry(settings)

    assert registry.types() == ["batch-commit", "health", "ping"]
    batch_handler = registry.get("batch-commit")
    assert isinstance(batch_handler.publisher, FilesystemPublisher)
    assert batch_handler.poll_seconds == 5
    assert batch_handler.wait_timeout_seconds == 60


def test_ping_handler_reports_worker(repository: JobRepository) -> None:
    job = repository.create_job(JobCreate(type="ping"))
    context = JobHandlerContext(job=job, worker_id="worker-7", repository=repository)

    result = PingHandler().execute({}, context)

    assert result["ok"] is True
    assert result["worker"] == "worker-7"
    assert datetime.fromisoformat(result["timestamp"]).tzinfo is not None
