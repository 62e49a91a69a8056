"""CLI entrypoint for wiki-jobs."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from wiki_jobs import __version__
from wiki_jobs.queue.controllers import (
    BATCH_CHILD_TYPES,
    JobsBatchCommand,
    JobsCliController,
    JobsCreateCommand,
    JobsInspectCommand,
    JobsListCommand,
    JobsStatsCommand,
    JobsSweepCommand,
    JobsWorkerCommand,
)
from wiki_jobs.queue.errors import JobQueueError, StoreUnavailableError
from wiki_jobs.queue.models import JobStatus

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

T = TypeVar("T")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (default: WIKI_JOBS_DB_PATH or .wiki_jobs.db).",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Print JSON output.")


@click.group()
@click.version_option(version=__version__, prog_name="wiki-jobs")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def wiki_jobs(verbose: bool) -> None:
    """Background job queue for wiki authoring tools.

    Jobs are created **pending**, claimed by exactly one worker, and end as
    **completed**, **failed** or **cancelled**.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@wiki_jobs.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only show jobs in this status.",
)
@click.option("--type", "job_type", default=None, help="Only show jobs of this type.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Skip this many of the most recent jobs.",
)
@json_option
def list_jobs(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    job_type: str | None,
    limit: int,
    offset: int,
    as_json: bool,
) -> None:
    """List jobs, most recent first."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.list_jobs(
                JobsListCommand(
                    db_path=db_path,
                    status=status,
                    job_type=job_type,
                    limit=limit,
                    offset=offset,
                    as_json=as_json,
                ),
            ),
        ),
    )


@wiki_jobs.command("create")
@db_path_option
@click.argument("job_type", metavar="TYPE")
@click.option("--params", "params_json", default=None, help="Job params as a JSON object.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=100),
    default=None,
    help="Retry ceiling (default: WIKI_JOBS_DEFAULT_MAX_RETRIES).",
)
@json_option
def create_job(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    params_json: str | None,
    priority: int,
    max_retries: int | None,
    as_json: bool,
) -> None:
    """Create one pending job of TYPE."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.create_job(
                JobsCreateCommand(
                    db_path=db_path,
                    job_type=job_type,
                    params_json=params_json,
                    priority=priority,
                    max_retries=max_retries,
                    as_json=as_json,
                ),
            ),
        ),
    )


@wiki_jobs.command("status")
@db_path_option
@click.argument("job_id", type=int)
@json_option
def job_status(db_path: Path | None, job_id: int, as_json: bool) -> None:
    """Show details of one job."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.job_status(
                JobsInspectCommand(db_path=db_path, job_id=job_id, as_json=as_json),
            ),
        ),
    )


@wiki_jobs.command("cancel")
@db_path_option
@click.argument("job_id", type=int)
@json_option
def cancel_job(db_path: Path | None, job_id: int, as_json: bool) -> None:
    """Cancel a pending or claimed job."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.cancel_job(
                JobsInspectCommand(db_path=db_path, job_id=job_id, as_json=as_json),
            ),
        ),
    )


@wiki_jobs.command("retry")
@db_path_option
@click.argument("job_id", type=int)
@json_option
def retry_job(db_path: Path | None, job_id: int, as_json: bool) -> None:
    """Retry a job.

    A claimed or running job is failed through the retry policy; a failed or
    cancelled job is resubmitted as a new pending job.
    """

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.retry_job(
                JobsInspectCommand(db_path=db_path, job_id=job_id, as_json=as_json),
            ),
        ),
    )


@wiki_jobs.command("sweep")
@db_path_option
@click.option(
    "--timeout-minutes",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Lease timeout (default: WIKI_JOBS_LEASE_TIMEOUT_SECONDS).",
)
@json_option
def sweep(db_path: Path | None, timeout_minutes: float | None, as_json: bool) -> None:
    """Return jobs stuck in claimed/running past the lease timeout to pending."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.sweep(
                JobsSweepCommand(
                    db_path=db_path,
                    timeout_minutes=timeout_minutes,
                    as_json=as_json,
                ),
            ),
        ),
    )


@wiki_jobs.command("stats")
@db_path_option
@json_option
def stats(db_path: Path | None, as_json: bool) -> None:
    """Show per-type counts, average duration and failure rate."""

    _emit_lines(
        _run(lambda: JOBS_CONTROLLER.stats(JobsStatsCommand(db_path=db_path, as_json=as_json))),
    )


@wiki_jobs.command("batch")
@db_path_option
@click.argument("action", type=click.Choice(sorted(BATCH_CHILD_TYPES)))
@click.argument("items", nargs=-1, required=True)
@click.option("--pr-title", default=None, help="Pull-request title for the batch commit.")
@click.option("--pr-body", default=None, help="Extra Markdown for the PR description.")
@click.option("--branch", "branch_name", default=None, help="Branch name (default: batch/<id>).")
@click.option("--label", "labels", multiple=True, help="PR label. Can be repeated.")
@click.option("--batch-id", default=None, help="Explicit batch id.")
@click.option("--priority", type=int, default=0, show_default=True, help="Child job priority.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=100),
    default=None,
    help="Retry ceiling for every job in the batch.",
)
@json_option
def submit_batch(  # noqa: PLR0913
    db_path: Path | None,
    action: str,
    items: tuple[str, ...],
    pr_title: str | None,
    pr_body: str | None,
    branch_name: str | None,
    labels: tuple[str, ...],
    batch_id: str | None,
    priority: int,
    max_retries: int | None,
    as_json: bool,
) -> None:
    """Fan out one content job per ITEM plus a batch-commit job.

    `improve` takes page ids, `create` takes page titles.
    """

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.submit_batch(
                JobsBatchCommand(
                    db_path=db_path,
                    action=action,
                    items=items,
                    pr_title=pr_title,
                    pr_body=pr_body,
                    branch_name=branch_name,
                    labels=labels,
                    batch_id=batch_id,
                    priority=priority,
                    max_retries=max_retries,
                    as_json=as_json,
                ),
            ),
        ),
    )


@wiki_jobs.command("worker")
@db_path_option
@click.option("--type", "job_type", default=None, help="Only claim jobs of this type.")
@click.option(
    "--poll/--no-poll",
    default=False,
    show_default=True,
    help="Keep polling when the queue is empty instead of exiting.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many jobs.",
)
@click.option("--worker-id", default=None, help="Worker id (default: WIKI_JOBS_WORKER_ID).")
@click.option(
    "--poll-interval",
    "poll_interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between polls of an empty queue.",
)
def run_worker(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str | None,
    poll: bool,
    max_jobs: int | None,
    worker_id: str | None,
    poll_interval_seconds: float | None,
) -> None:
    """Claim and execute jobs."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.run_worker(
                JobsWorkerCommand(
                    db_path=db_path,
                    job_type=job_type,
                    poll=poll,
                    max_jobs=max_jobs,
                    worker_id=worker_id,
                    poll_interval_seconds=poll_interval_seconds,
                ),
            ),
        ),
    )


@wiki_jobs.command("types")
def handler_types() -> None:
    """List job types with a registered handler."""

    _emit_lines(_run(JOBS_CONTROLLER.handler_types))


@wiki_jobs.command("ping")
@db_path_option
def ping(db_path: Path | None) -> None:
    """Create a ping job, run it inline and report."""

    result = _run(lambda: JOBS_CONTROLLER.ping(db_path))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Ping job did not complete.")


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except StoreUnavailableError as error:
        raise click.ClickException(f"Job store not available: {error}") from error
    except (JobQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    wiki_jobs()
