"""SQLite-backed document store for featurectl state.

Sessions, plans, questions, status and invocation records are JSON documents
keyed by a slash-separated path (``{project_id}/{feature_id}/plan.json``).
Session logs live in their own table so log volume never rewrites documents.
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, TypedDict, cast

from featurectl.paths import DEFAULT_DB_PATH


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# Bump when adding migrations. 0 = fresh file.
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS documents (
    path TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS session_logs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    feature_id TEXT NOT NULL,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'controller',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""


class SessionLogRow(TypedDict):
    id: str
    project_id: str
    feature_id: str
    level: str
    message: str
    source: str
    created_at: str


class DocumentStore(Protocol):
    """Persistence collaborator used by the registry."""

    def get(self, path: str) -> dict[str, Any] | None: ...

    def put(self, path: str, doc: dict[str, Any]) -> None: ...

    def exists(self, path: str) -> bool: ...


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


# (version, fn) pairs applied in order to files older than SCHEMA_VERSION.
_MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = []


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run idempotent migrations from from_version to SCHEMA_VERSION."""
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_session_logs_session
            ON session_logs(project_id, feature_id, created_at);
    """)


# -- documents --


def get_document(conn: sqlite3.Connection, path: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT data FROM documents WHERE path = ?", (path,)).fetchone()
    if row is None:
        return None
    return cast(dict[str, Any], json.loads(row["data"]))


def put_document(conn: sqlite3.Connection, path: str, doc: dict[str, Any]) -> None:
    data = json.dumps(doc, sort_keys=True)
    now = _utcnow()
    conn.execute(
        "INSERT INTO documents (path, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
        "ON CONFLICT(path) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
        (path, data, now, now),
    )
    conn.commit()


def document_exists(conn: sqlite3.Connection, path: str) -> bool:
    row = conn.execute("SELECT 1 FROM documents WHERE path = ?", (path,)).fetchone()
    return row is not None


class SqliteDocumentStore:
    """DocumentStore over one open connection.

    The connection is owned by the caller (usually a ``connect()`` block).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, path: str) -> dict[str, Any] | None:
        return get_document(self.conn, path)

    def put(self, path: str, doc: dict[str, Any]) -> None:
        put_document(self.conn, path, doc)

    def exists(self, path: str) -> bool:
        return document_exists(self.conn, path)


# -- session logs --


def add_session_log(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    feature_id: str,
    level: str,
    message: str,
    source: str = "controller",
) -> dict:
    log_id = uuid.uuid4().hex[:12]
    conn.execute(
        "INSERT INTO session_logs (id, project_id, feature_id, level, message, source) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (log_id, project_id, feature_id, level, message, source),
    )
    conn.commit()
    return {
        "id": log_id,
        "project_id": project_id,
        "feature_id": feature_id,
        "level": level,
        "message": message,
        "source": source,
    }


def list_session_logs(
    conn: sqlite3.Connection,
    project_id: str,
    feature_id: str,
    level: str | None = None,
) -> list[SessionLogRow]:
    query = "SELECT * FROM session_logs WHERE project_id = ? AND feature_id = ?"
    params: list[str] = [project_id, feature_id]
    if level:
        query += " AND level = ?"
        params.append(level)
    rows = conn.execute(query + " ORDER BY created_at, rowid", params).fetchall()
    return [cast(SessionLogRow, dict(row)) for row in rows]
