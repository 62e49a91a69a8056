"""Job handler interface and the type-to-handler registry."""

from __future__ import annotations

import importlib
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from wiki_jobs.queue.models import JobView

if TYPE_CHECKING:
    from wiki_jobs.queue.repository import JobRepository


class HandlerError(Exception):
    """Raised by a handler to fail the current attempt."""


class JobDeferred(HandlerError):
    """Raised by a handler that cannot make progress yet.

    The worker returns the job to pending without consuming a retry and keeps it
    unclaimable for ``retry_after_seconds`` (the worker default when ``None``).
    A job older than the worker's ``max_defer_seconds`` fails the attempt instead.
    """

    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


@dataclass(slots=True)
class JobHandlerContext:
    """Execution context passed to handlers next to the job params."""

    job: JobView
    worker_id: str
    repository: JobRepository


class JobHandler(Protocol):
    """Protocol implemented by job handlers."""

    def execute(self, params: dict[str, Any], context: JobHandlerContext) -> dict[str, Any] | None:
        """Run one job attempt and return its result payload."""


HandlerFunction = Callable[[dict[str, Any], JobHandlerContext], "dict[str, Any] | None"]


class FunctionHandler:
    """Adapt a plain function to the ``JobHandler`` protocol."""

    def __init__(self, function: HandlerFunction) -> None:
        self.function = function

    def execute(self, params: dict[str, Any], context: JobHandlerContext) -> dict[str, Any] | None:
        return self.function(params, context)


class HandlerRegistry:
    """Fixed map from job type to handler, built at process start."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(
        self,
        job_type: str,
        handler: JobHandler | HandlerFunction,
        *,
        replace: bool = False,
    ) -> None:
        job_type = job_type.strip()
        if not job_type:
            raise ValueError("Handler job type must not be empty.")
        if job_type in self._handlers and not replace:
            raise ValueError(f"Handler already registered for job type: {job_type}")
        if not hasattr(handler, "execute"):
            if not callable(handler):
                raise TypeError(f"Handler for {job_type} is neither a JobHandler nor callable.")
            handler = FunctionHandler(handler)
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    def is_known(self, job_type: str) -> bool:
        return job_type in self._handlers

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def __iter__(self) -> Iterator[str]:
        return iter(self.types())

    def __len__(self) -> int:
        return len(self._handlers)

    def load_from_spec(self, spec: str) -> list[str]:
        """Register handlers from ``"type=module:attr,type2=module:attr"``.

        ``attr`` may be a handler instance, a handler class (instantiated without
        arguments), or a plain function.
        """

        loaded: list[str] = []
        for raw_entry in spec.split(","):
            entry = raw_entry.strip()
            if not entry:
                continue
            job_type, separator, target = entry.partition("=")
            module_name, colon, attr_name = target.strip().partition(":")
            if not separator or not colon or not module_name or not attr_name:
                raise ValueError(
                    f"Invalid handler entry {entry!r}; expected type=module:attribute.",
                )
            try:
                module = importlib.import_module(module_name)
            except ImportError as error:
                raise ValueError(f"Cannot import handler module {module_name!r}: {error}") from error
            handler = getattr(module, attr_name, None)
            if handler is None:
                raise ValueError(f"Handler {attr_name!r} not found in module {module_name!r}.")
            if isinstance(handler, type):
                handler = handler()
            self.register(job_type, handler, replace=True)
            loaded.append(job_type.strip())
        return loaded
