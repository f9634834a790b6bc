"""Tests for the SQLite document store and session logs."""

from __future__ import annotations

import sqlite3

from featurectl.store import (
    SCHEMA_VERSION,
    SqliteDocumentStore,
    add_session_log,
    connect,
    document_exists,
    get_connection,
    get_document,
    list_session_logs,
    put_document,
)


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


class TestSchema:
    def test_fresh_database_is_current(self, tmp_path) -> None:
        with connect(tmp_path / "nested" / "fresh.db") as conn:
            assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
            assert "source" in _columns(conn, "session_logs")
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"

    def test_unversioned_file_is_stamped_and_indexed(self, tmp_path) -> None:
        path = tmp_path / "unversioned.db"
        raw = sqlite3.connect(str(path))
        raw.execute("CREATE TABLE documents (path TEXT PRIMARY KEY, data TEXT NOT NULL)")
        raw.execute("""INSERT INTO documents VALUES ('p/f/session.json', '{"title": "kept"}')""")
        raw.commit()
        raw.close()

        conn = get_connection(path)
        try:
            assert SCHEMA_VERSION == 1
            assert conn.execute("PRAGMA user_version").fetchone()[0] == 1
            indexes = {
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'index'"
                ).fetchall()
            }
            assert "idx_session_logs_session" in indexes
            assert get_document(conn, "p/f/session.json") == {"title": "kept"}
        finally:
            conn.close()

        # A second open is a no-op.
        with connect(path) as again:
            assert again.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION


class TestDocuments:
    def test_put_get_exists(self, db_conn) -> None:
        assert get_document(db_conn, "a/b/plan.json") is None
        assert not document_exists(db_conn, "a/b/plan.json")

        put_document(db_conn, "a/b/plan.json", {"version": 1, "steps": []})
        put_document(db_conn, "a/b/plan.json", {"version": 2, "steps": [{"id": "s1"}]})

        assert document_exists(db_conn, "a/b/plan.json")
        assert get_document(db_conn, "a/b/plan.json") == {"version": 2, "steps": [{"id": "s1"}]}
        count = db_conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        assert count == 1

    def test_store_wrapper(self, db_conn) -> None:
        store = SqliteDocumentStore(db_conn)
        store.put("x/y/status.json", {"status": "idle"})
        assert store.exists("x/y/status.json")
        assert store.get("x/y/status.json") == {"status": "idle"}
        assert store.get("x/y/missing.json") is None


class TestSessionLogs:
    def test_filter_by_session_and_level(self, db_conn) -> None:
        add_session_log(db_conn, project_id="p", feature_id="f", level="INFO", message="one")
        add_session_log(
            db_conn,
            project_id="p",
            feature_id="f",
            level="ERROR",
            message="two",
            source="recovery",
        )
        add_session_log(db_conn, project_id="p", feature_id="g", level="INFO", message="other")

        rows = list_session_logs(db_conn, "p", "f")
        assert [r["message"] for r in rows] == ["one", "two"]
        assert rows[0]["source"] == "controller"

        errors = list_session_logs(db_conn, "p", "f", level="ERROR")
        assert [(r["message"], r["source"]) for r in errors] == [("two", "recovery")]
