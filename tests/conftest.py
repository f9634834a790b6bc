"""Shared test fixtures: template DB for fast per-test isolation, scripted agent, event recorder."""

from __future__ import annotations

import shutil
import sqlite3
import tempfile
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from featurectl.assessors import ComplexityAssessment, CoverageRequirement, ImpactAssessment
from featurectl.controller import StageController
from featurectl.invoker import InvocationResult
from featurectl.markers import parse
from featurectl.registry import SessionRegistry
from featurectl.store import SqliteDocumentStore, get_connection

PR_URL = "https://example.test/org/repo/pull/1"


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema.

    Copying this file is much cheaper than running migrations in every test.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_path(tmp_path: Path, _db_template_path: Path) -> Path:
    path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, path)
    return path


@pytest.fixture()
def db_conn(db_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with the schema pre-loaded."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def registry(db_conn: sqlite3.Connection) -> SessionRegistry:
    return SessionRegistry(SqliteDocumentStore(db_conn))


class RecordingSink:
    """EventSink that keeps every published event in memory."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def publish(
        self,
        event_type: str,
        session_id: str,
        *,
        project: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.events.append(
            {"type": event_type, "id": session_id, "project": project, **(data or {})}
        )

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def project_dir(tmp_path: Path) -> str:
    path = tmp_path / "repo"
    path.mkdir()
    return str(path)


# ---------------------------------------------------------------------------
# Scripted agent
# ---------------------------------------------------------------------------


class ScriptedInvoker:
    """Stands in for AgentInvoker: replays canned replies in order.

    A reply is either agent text (wrapped in a successful result) or a
    ready-made ``InvocationResult``. Running out of replies fails the test.
    """

    def __init__(self, *replies: str | InvocationResult) -> None:
        self.replies: list[str | InvocationResult] = list(replies)
        self.calls: list[dict[str, Any]] = []

    def add(self, *replies: str | InvocationResult) -> None:
        self.replies.extend(replies)

    @property
    def prompts(self) -> list[str]:
        return [c["prompt"] for c in self.calls]

    async def invoke(self, prompt: str, workdir: str, **kwargs: Any) -> InvocationResult:
        self.calls.append({"prompt": prompt, "workdir": workdir, **kwargs})
        if not self.replies:
            raise AssertionError(f"Unexpected agent invocation #{len(self.calls)}")
        reply = self.replies.pop(0)
        if isinstance(reply, InvocationResult):
            return reply
        return InvocationResult(
            outcome=parse(reply), output=reply, continuation=f"cont-{len(self.calls)}"
        )


def failed_result(failure: str = "agent_error") -> InvocationResult:
    return InvocationResult(
        outcome=parse(""), output="", is_error=True, error="agent fell over", failure=failure
    )


@pytest.fixture()
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture()
def assessor() -> MagicMock:
    mock = MagicMock()
    mock.assess_complexity = AsyncMock(
        return_value=ComplexityAssessment("simple", "small change", ["backend", "testing"])
    )
    mock.assess_test_requirement = AsyncMock(
        return_value=CoverageRequirement(required=True, reason="touches the API")
    )
    mock.validate_decisions = AsyncMock(
        side_effect=lambda decisions, session, plan: list(decisions)
    )
    mock.assess_incomplete_steps = AsyncMock(
        return_value=ImpactAssessment(affected=[], unaffected=[], summary="")
    )
    return mock


@pytest.fixture()
def verifier() -> MagicMock:
    mock = MagicMock()
    mock.confirm = AsyncMock(return_value=PR_URL)
    return mock


@pytest.fixture()
def controller(registry, invoker, assessor, sink, verifier) -> StageController:
    return StageController(
        registry, invoker, assessor, sink, verifier, templates=lambda project_dir: {}
    )
