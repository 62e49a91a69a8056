from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from wiki_jobs import __version__
from wiki_jobs.main import wiki_jobs

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("CLI"),
]


def _invoke(*args: str):
    return CliRunner().invoke(wiki_jobs, list(args))


def test_version_option() -> None:
    result = _invoke("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_create_status_and_list(db_path: Path) -> None:
    created = _invoke(
        "create",
        "page-improve",
        "--db-path",
        str(db_path),
        "--params",
        '{"pageId": "ai-risk"}',
        "--priority",
        "3",
        "--json",
    )
    assert created.exit_code == 0
    payload = json.loads(created.output)
    assert payload["status"] == "pending"
    assert payload["params"] == {"pageId": "ai-risk"}
    assert payload["priority"] == 3
    assert payload["maxRetries"] == 3

    status = _invoke("status", str(payload["id"]), "--db-path", str(db_path))
    assert status.exit_code == 0
    assert f"Job #{payload['id']}" in status.output
    assert "page-improve" in status.output
    assert '"pageId": "ai-risk"' in status.output

    listed = _invoke("list", "--db-path", str(db_path), "--status", "pending", "--json")
    assert listed.exit_code == 0
    page = json.loads(listed.output)
    assert page["total"] == 1
    assert [entry["id"] for entry in page["entries"]] == [payload["id"]]


def test_list_reports_empty_store(db_path: Path) -> None:
    result = _invoke("list", "--db-path", str(db_path))
    assert result.exit_code == 0
    assert "Jobs (0 total)" in result.output
    assert "No jobs found matching filters." in result.output


def test_create_rejects_invalid_params(db_path: Path) -> None:
    not_json = _invoke("create", "ping", "--db-path", str(db_path), "--params", "{oops")
    assert not_json.exit_code == 1
    assert "--params must be valid JSON" in not_json.output

    not_object = _invoke("create", "ping", "--db-path", str(db_path), "--params", "42")
    assert not_object.exit_code == 1
    assert "--params must be a JSON object." in not_object.output


def test_status_of_missing_job_fails(db_path: Path) -> None:
    result = _invoke("status", "99", "--db-path", str(db_path))
    assert result.exit_code == 1
    assert "Job not found: #99" in result.output


def test_cancel_then_retry_resubmits(db_path: Path) -> None:
    assert _invoke("create", "page-create", "--db-path", str(db_path)).exit_code == 0

    cancelled = _invoke("cancel", "1", "--db-path", str(db_path))
    assert cancelled.exit_code == 0
    assert "Cancelled job #1" in cancelled.output

    again = _invoke("cancel", "1", "--db-path", str(db_path))
    assert again.exit_code == 1
    assert "cannot be cancelled from status=cancelled" in again.output

    retried = _invoke("retry", "1", "--db-path", str(db_path))
    assert retried.exit_code == 0
    assert "Job #1 resubmitted as new job #2" in retried.output


def test_retry_rejects_pending_job(db_path: Path) -> None:
    assert _invoke("create", "ping", "--db-path", str(db_path)).exit_code == 0

    result = _invoke("retry", "1", "--db-path", str(db_path))
    assert result.exit_code == 1
    assert "cannot be retried from status=pending" in result.output


def test_worker_runs_queued_ping_job(db_path: Path) -> None:
    assert _invoke("create", "ping", "--db-path", str(db_path)).exit_code == 0

    worker = _invoke("worker", "--db-path", str(db_path), "--worker-id", "worker-cli")
    assert worker.exit_code == 0
    assert "Worker summary (worker-cli)" in worker.output
    assert "processed=1 completed=1" in worker.output

    status = _invoke("status", "1", "--db-path", str(db_path), "--json")
    assert json.loads(status.output)["status"] == "completed"


def test_worker_rejects_unknown_type_filter(db_path: Path) -> None:
    result = _invoke("worker", "--db-path", str(db_path), "--type", "nope")
    assert result.exit_code == 1
    assert "Unknown job type: nope" in result.output


def test_ping_round_trip(db_path: Path) -> None:
    result = _invoke("ping", "--db-path", str(db_path))
    assert result.exit_code == 0
    assert "Created ping job #1" in result.output
    assert "Ping job #1 completed successfully!" in result.output


def test_batch_submission(db_path: Path) -> None:
    result = _invoke(
        "batch",
        "improve",
        "ai-risk",
        "alignment",
        "--db-path",
        str(db_path),
        "--batch-id",
        "weekly-1",
        "--label",
        "auto",
        "--json",
    )
    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["batchId"] == "weekly-1"
    assert len(payload["childJobIds"]) == 2
    assert [child["params"]["pageId"] for child in payload["children"]] == [
        "ai-risk",
        "alignment",
    ]
    commit = payload["commitJob"]
    assert commit["type"] == "batch-commit"
    assert commit["params"]["childJobIds"] == payload["childJobIds"]
    assert commit["params"]["prTitle"] == "Batch improve: 2 page(s)"
    assert commit["params"]["prLabels"] == ["auto"]


def test_sweep_and_stats(db_path: Path) -> None:
    sweep = _invoke("sweep", "--db-path", str(db_path), "--timeout-minutes", "5")
    assert sweep.exit_code == 0
    assert "No stale jobs found." in sweep.output

    empty = _invoke("stats", "--db-path", str(db_path))
    assert empty.exit_code == 0
    assert "No jobs recorded yet." in empty.output

    assert _invoke("create", "ping", "--db-path", str(db_path)).exit_code == 0
    assert _invoke("worker", "--db-path", str(db_path)).exit_code == 0
    stats = _invoke("stats", "--db-path", str(db_path), "--json")
    assert stats.exit_code == 0
    payload = json.loads(stats.output)
    assert payload["totalJobs"] == 1
    assert payload["byType"]["ping"]["byStatus"] == {"completed": 1}
    assert payload["byType"]["ping"]["failureRate"] == 0.0


def test_types_lists_builtin_handlers() -> None:
    result = _invoke("types")
    assert result.exit_code == 0
    assert "Registered job types (2):" in result.output
    assert "batch-commit" in result.output
    assert "ping" in result.output


def test_unavailable_store_is_reported(tmp_path: Path) -> None:
    db_path = tmp_path / "missing" / "dir" / "jobs.db"

    result = _invoke("list", "--db-path", str(db_path))

    assert result.exit_code == 1
    assert "Job store not available" in result.output
