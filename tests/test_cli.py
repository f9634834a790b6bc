"""CLI tests: JSON output, queue handling and error reporting."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from featurectl.cli import main
from featurectl.registry import project_id_for
from featurectl.settings import Settings
from featurectl.store import add_session_log, connect


@pytest.fixture()
def project(project_dir) -> str:
    return str(Path(project_dir).resolve())


@pytest.fixture()
def cli(db_path):
    """Invoke the CLI against the per-test database, without Redis."""
    runner = CliRunner()

    def invoke(*args: str):
        return runner.invoke(main, list(args))

    with (
        patch("featurectl.cli.connect", lambda: connect(db_path)),
        patch("featurectl.service.load_settings", return_value=Settings()),
        patch(
            "featurectl.service.RedisEventSink",
            return_value=MagicMock(aclose=AsyncMock()),
        ),
    ):
        yield invoke


def _json(result) -> object:
    return json.loads(result.stdout)


def test_create_without_run(cli, project):
    result = cli("session", "create", "Add CSV export", "-p", project, "--no-run")
    assert result.exit_code == 0, result.output
    data = _json(result)
    assert data["feature_id"] == "add-csv-export"
    assert data["stage"] == 1
    assert data["queue_position"] is None
    assert data["project_id"] == project_id_for(project)


def test_second_session_is_queued_and_reorderable(cli, project):
    for title in ("First feature", "Second feature", "Third feature"):
        result = cli("session", "create", title, "-p", project, "--no-run")
        assert result.exit_code == 0, result.output

    listing = _json(cli("queue", "list", "-p", project))
    assert listing["active"] == "first-feature"
    assert [q["feature_id"] for q in listing["queue"]] == ["second-feature", "third-feature"]

    reordered = _json(cli("queue", "reorder", "third-feature", "-p", project))
    assert reordered == {"queue": ["third-feature", "second-feature"]}

    sessions = _json(cli("session", "list", "-p", project))
    assert {s["feature_id"]: s["queue_position"] for s in sessions} == {
        "first-feature": None,
        "second-feature": 2,
        "third-feature": 1,
    }


def test_queue_at_front(cli, project):
    cli("session", "create", "Active one", "-p", project, "--no-run")
    cli("session", "create", "Queued one", "-p", project, "--no-run")
    result = cli(
        "session", "create", "Urgent fix", "-p", project, "--no-run", "--queue-at", "front"
    )
    assert _json(result)["queue_position"] == 1


def test_bad_queue_position_is_usage_error(cli, project):
    result = cli("session", "create", "X", "-p", project, "--no-run", "--queue-at", "soon")
    assert result.exit_code == 2
    data = _json(result)
    assert data["ok"] is False
    assert "--queue-at" in data["error"]


def test_domain_errors_are_json(cli, project):
    missing = cli("session", "show", "nope", "-p", project)
    assert missing.exit_code == 1
    expected = f"Session '{project_id_for(project)}/nope' not found"
    assert _json(missing) == {"ok": False, "error": expected}

    cli("session", "create", "Add CSV export", "-p", project, "--no-run")
    duplicate = cli("session", "create", "Add CSV export", "-p", project, "--no-run")
    assert duplicate.exit_code == 1
    assert "already exists" in _json(duplicate)["error"]

    early = cli("approve", "add-csv-export", "-p", project)
    assert early.exit_code == 1
    assert "Invalid stage transition 1 -> 7" in _json(early)["error"]

    unqueued = cli("queue", "reorder", "add-csv-export", "-p", project)
    assert "is not queued" in _json(unqueued)["error"]


def test_unknown_command_suggests(cli):
    result = cli("sesion")
    assert result.exit_code == 2
    assert _json(result)["error"].startswith("No such command 'sesion'. Did you mean: session")


def test_show_and_decisions(cli, project):
    cli("session", "create", "Add CSV export", "-p", project, "--no-run")

    shown = _json(cli("session", "show", "add-csv-export", "-p", project))
    assert shown["stage_name"] == "discovery"
    assert shown["execution"]["last_action"] == "session_created"
    assert shown["pending_questions"] == []

    assert _json(cli("decision", "list", "add-csv-export", "-p", project)) == []
    answer = cli("decision", "answer", "add-csv-export", "q-missing", "yes", "-p", project)
    assert answer.exit_code == 1
    assert "q-missing" in _json(answer)["error"]


def test_logs_filtered_by_level(cli, project, db_path):
    pid = project_id_for(project)
    with connect(db_path) as conn:
        add_session_log(conn, project_id=pid, feature_id="f", level="INFO", message="started")
        add_session_log(conn, project_id=pid, feature_id="f", level="WARNING", message="slow")

    rows = _json(cli("session", "logs", "f", "-p", project, "--level", "warning"))
    assert [r["message"] for r in rows] == ["slow"]


def test_recover_dry_run_with_nothing_stuck(cli, project):
    cli("session", "create", "Add CSV export", "-p", project, "--no-run")
    report = _json(cli("recover", "--dry-run"))
    assert report["checked"] == 1
    assert report["stuck"] == []
    assert report["dry_run"] is True
