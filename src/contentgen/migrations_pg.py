from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("contentgen.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    conn.commit()
    for version, migration in _get_migrations():
        if version in applied:
            continue
        conn.execute("BEGIN")
        try:
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.info("migration_applied version=%s", version)


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            requested_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_status_requested ON jobs(status, requested_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_locked ON jobs(locked_by, locked_at)")


def _migrate_generation_tables(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL DEFAULT 'brand',
            brand_name TEXT NOT NULL,
            industry TEXT NULL,
            brand_description TEXT NULL,
            brand_voice_description TEXT NULL,
            primary_goal TEXT NULL,
            do_rules TEXT NULL,
            dont_rules TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_profiles_user ON profiles(user_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS generation_batches (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            profile_id TEXT NULL,
            status TEXT NOT NULL,
            error TEXT NULL,
            requested_count INTEGER NOT NULL DEFAULT 0,
            item_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            finished_at TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_batches_user ON generation_batches(user_id, created_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS posts (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            batch_id TEXT NOT NULL REFERENCES generation_batches(id) ON DELETE CASCADE,
            status TEXT NOT NULL,
            content_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_posts_batch ON posts(batch_id)")


def _migrate_batches_cancel_flag(conn) -> None:
    conn.execute(
        "ALTER TABLE generation_batches ADD COLUMN IF NOT EXISTS cancel_requested INTEGER NOT NULL DEFAULT 0"
    )


def _migrate_notifications(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            action_url TEXT NULL,
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)"
    )


def _migrate_llm_runs(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS llm_runs (
            id TEXT PRIMARY KEY,
            ts TEXT NOT NULL,
            job_id TEXT NULL,
            batch_id TEXT NULL,
            provider TEXT NULL,
            model TEXT NULL,
            prompt_name TEXT NULL,
            input_chars INTEGER NULL,
            output_chars INTEGER NULL,
            latency_ms INTEGER NULL,
            ok INTEGER NOT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_llm_runs_ts ON llm_runs(ts)")


def _get_migrations():
    return [
        ("pg_bootstrap_001", _bootstrap_schema),
        ("pg_generation_002", _migrate_generation_tables),
        ("pg_batch_cancel_003", _migrate_batches_cancel_flag),
        ("pg_notifications_004", _migrate_notifications),
        ("pg_llm_runs_005", _migrate_llm_runs),
    ]
