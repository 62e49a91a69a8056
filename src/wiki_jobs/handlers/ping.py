"""Smoke-test handler."""

from __future__ import annotations

from typing import Any

from wiki_jobs.handlers.registry import JobHandlerContext
from wiki_jobs.storage.common import utc_now


class PingHandler:
    """Answers immediately; proves a worker can claim, run, and report."""

    def execute(self, params: dict[str, Any], context: JobHandlerContext) -> dict[str, Any]:
        del params
        return {
            "ok": True,
            "worker": context.worker_id,
            "timestamp": utc_now().isoformat(),
        }
