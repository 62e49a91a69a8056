"""Destinations for merged batch file changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from wiki_jobs.queue.batch import BatchAggregate, FileChange

logger = logging.getLogger(__name__)

CONTENT_PREFIXES = ("content/docs/", "data/")
CONTENT_SUFFIXES = (".mdx", ".yaml", ".yml")


@dataclass(slots=True)
class PublishResult:
    """What a publisher did with a batch aggregate."""

    publisher: str
    applied: int = 0
    applied_paths: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "publisher": self.publisher,
            "applied": self.applied,
            "appliedPaths": list(self.applied_paths),
            "errors": list(self.errors),
        }


class BatchPublisher(Protocol):
    """Protocol implemented by batch publishers."""

    def publish(self, aggregate: BatchAggregate) -> PublishResult:
        """Hand the merged batch outcome to its destination."""


class NullPublisher:
    """Records the aggregate in the job result only."""

    def publish(self, aggregate: BatchAggregate) -> PublishResult:
        del aggregate
        return PublishResult(publisher="none")


class FilesystemPublisher:
    """Writes merged file changes into a working tree."""

    def __init__(self, project_root: Path) -> None:
        self.project_root = project_root

    def publish(self, aggregate: BatchAggregate) -> PublishResult:
        result = apply_file_changes(self.project_root, aggregate.file_changes)
        logger.info(
            "Batch %s: applied %d file change(s) under %s (%d error(s))",
            aggregate.batch_id,
            result.applied,
            self.project_root,
            len(result.errors),
        )
        return result


def is_content_file(path: str) -> bool:
    """Wiki content: pages under content/docs, data files, MDX and YAML."""

    return path.startswith(CONTENT_PREFIXES) or path.endswith(CONTENT_SUFFIXES)


def apply_file_changes(project_root: Path, changes: list[FileChange]) -> PublishResult:
    """Write or delete each change, refusing paths outside the root or non-content files."""

    root = project_root.resolve()
    result = PublishResult(publisher="filesystem")
    for change in changes:
        target = (root / change.path).resolve()
        if not target.is_relative_to(root) or target == root:
            result.errors.append(
                f"{change.path}: path traversal detected (resolves outside project root)",
            )
            continue
        if not is_content_file(change.path):
            result.errors.append(f"{change.path}: not a content file (skipped)")
            continue

        try:
            if change.content is None:
                target.unlink()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(change.content, encoding="utf-8")
        except OSError as error:
            result.errors.append(f"{change.path}: {error}")
            continue
        result.applied += 1
        result.applied_paths.append(change.path)
    return result
