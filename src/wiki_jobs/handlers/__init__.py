"""Built-in job handlers and registry construction."""

from __future__ import annotations

from wiki_jobs.config import Settings
from wiki_jobs.handlers.batch_commit import BatchCommitHandler
from wiki_jobs.handlers.ping import PingHandler
from wiki_jobs.handlers.publishers import BatchPublisher, FilesystemPublisher, NullPublisher
from wiki_jobs.handlers.registry import HandlerRegistry
from wiki_jobs.queue.batch import BATCH_COMMIT_JOB_TYPE

PING_JOB_TYPE = "ping"


def default_registry(settings: Settings | None = None) -> HandlerRegistry:
    """Registry with ``ping``, ``batch-commit`` and any handlers named in settings."""

    settings = settings or Settings()
    publisher: BatchPublisher = (
        FilesystemPublisher(settings.batch.project_root)
        if settings.batch.project_root is not None
        else NullPublisher()
    )

    registry = HandlerRegistry()
    registry.register(PING_JOB_TYPE, PingHandler())
    registry.register(
        BATCH_COMMIT_JOB_TYPE,
        BatchCommitHandler(
            publisher,
            wait_timeout_seconds=settings.batch.wait_timeout_seconds,
            poll_seconds=settings.batch.poll_seconds,
        ),
    )
    if settings.handler_specs:
        registry.load_from_spec(settings.handler_specs)
    return registry
