import sqlite3

import pytest

from contentgen.db import _convert_qmark_to_percent, _normalize_sql, connect_db
from contentgen.migrations import _get_migrations, apply_migrations
from contentgen.retry import RetryPolicy
from contentgen.storage import run_store_write


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))
    assert len(versions) == 5


def test_qmark_conversion_skips_literals():
    sql = "SELECT * FROM jobs WHERE id = ? AND error = 'why?'"

    assert _convert_qmark_to_percent(sql) == "SELECT * FROM jobs WHERE id = %s AND error = 'why?'"
    assert _normalize_sql(sql, "sqlite") == sql


def test_insert_or_ignore_becomes_on_conflict():
    normalized = _normalize_sql("INSERT OR IGNORE INTO settings (key) VALUES (?)", "postgres")

    assert normalized == "INSERT INTO settings (key) VALUES (%s) ON CONFLICT DO NOTHING"


def test_transaction_rolls_back_on_error(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))

    try:
        with conn.transaction():
            conn.execute(
                "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                ("k", "1", "now"),
            )
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert conn.execute("SELECT COUNT(*) FROM settings WHERE key = 'k'").fetchone()[0] == 0


def test_store_write_retries_transient_errors(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))
    calls = {"count": 0}

    def _write():
        calls["count"] += 1
        if calls["count"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return "written"

    result = run_store_write(conn, RetryPolicy(max_attempts=3, sleep=lambda _: None), _write)

    assert result == "written"
    assert calls["count"] == 2


def test_store_write_reopens_closed_connection(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))
    calls = {"count": 0}

    def _write():
        calls["count"] += 1
        if calls["count"] == 1:
            conn.close()
            raise sqlite3.OperationalError("database is locked")
        return conn.execute("SELECT 1").fetchone()[0]

    assert run_store_write(conn, RetryPolicy(max_attempts=2, sleep=lambda _: None), _write) == 1
    assert conn.closed is False


def test_store_write_does_not_retry_schema_errors(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))
    calls = {"count": 0}

    def _write():
        calls["count"] += 1
        return conn.execute("SELECT * FROM no_such_table").fetchone()

    with pytest.raises(sqlite3.OperationalError, match="no such table"):
        run_store_write(conn, RetryPolicy(max_attempts=3, sleep=lambda _: None), _write)
    assert calls["count"] == 1
