from __future__ import annotations

import json
import logging
from typing import Any, Callable, Iterable, TypeVar

from .db import connect_db, is_transient_db_error
from .models import (
    BATCH_TERMINAL_STATUSES,
    BatchStatus,
    GenerationBatch,
    Job,
    JobStatus,
    Notification,
    Post,
    Profile,
)
from .retry import RetryPolicy
from .utils import json_dumps, json_loads_or, new_id, utc_now_iso, utc_now_iso_offset

T = TypeVar("T")

_JOB_COLUMNS = """
    id, job_type, status, payload_json, result_json, attempts, requested_at,
    started_at, finished_at, locked_by, locked_at, error
"""

_BATCH_COLUMNS = """
    id, user_id, profile_id, status, error, requested_count, item_count,
    cancel_requested, created_at, updated_at, finished_at
"""

_PROFILE_COLUMNS = """
    id, user_id, kind, brand_name, industry, brand_description,
    brand_voice_description, primary_goal, do_rules, dont_rules
"""

_OPEN_BATCH_STATUSES = (BatchStatus.PENDING.value, BatchStatus.PROCESSING.value)


def init_db(path: str | None = None):
    return connect_db(path)


def run_store_write(
    conn: Any,
    policy: RetryPolicy,
    fn: Callable[[], T],
    *,
    logger: logging.Logger | None = None,
    name: str = "store_write",
) -> T:
    def _recover(_attempt: int, _exc: BaseException) -> None:
        try:
            conn.rollback()
        except Exception:  # noqa: BLE001
            pass
        if conn.closed:
            conn.reopen()

    return policy.run(
        fn,
        is_retryable=is_transient_db_error,
        on_retry=_recover,
        logger=logger,
        name=name,
    )


# settings


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# jobs


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    *,
    commit: bool = True,
) -> str:
    job_id = new_id("job")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, job_type, status, payload_json, result_json, attempts, requested_at,
             started_at, finished_at, locked_by, locked_at, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            JobStatus.PENDING.value,
            json_dumps(payload) if payload else None,
            None,
            0,
            now,
            None,
            None,
            None,
            None,
            None,
        ),
    )
    if commit:
        conn.commit()
    return job_id


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: Any, limit: int = 50, status: str | None = None) -> list[Job]:
    if status:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            WHERE status = ?
            ORDER BY requested_at DESC
            LIMIT ?
            """,
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            ORDER BY requested_at DESC
            LIMIT ?
            """,
            (limit,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def count_jobs_by_status(conn: Any) -> dict[str, int]:
    counts = {status.value: 0 for status in JobStatus}
    cursor = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
    for status, count in cursor.fetchall():
        counts[status] = int(count or 0)
    return counts


def claim_job(conn: Any, job_id: str, worker_id: str) -> Job | None:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'processing',
            attempts = attempts + 1,
            started_at = ?,
            locked_by = ?,
            locked_at = ?
        WHERE id = ? AND status = 'pending'
        """,
        (now, worker_id, now, job_id),
    )
    claimed = cursor.rowcount == 1
    conn.commit()
    if not claimed:
        return None
    return get_job(conn, job_id)


def list_pending_job_ids(
    conn: Any,
    *,
    min_age_seconds: int = 0,
    allowed_types: Iterable[str] | None = None,
    limit: int = 50,
) -> list[str]:
    cutoff = utc_now_iso_offset(seconds=-min_age_seconds)
    params: list[object] = [cutoff]
    type_clause = ""
    types = list(allowed_types or [])
    if types:
        placeholders = ",".join(["?"] * len(types))
        type_clause = f" AND job_type IN ({placeholders})"
        params.extend(types)
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT id FROM jobs
        WHERE status = 'pending' AND requested_at <= ? {type_clause}
        ORDER BY requested_at ASC
        LIMIT ?
        """,
        tuple(params),
    )
    return [row[0] for row in cursor.fetchall()]


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: Iterable[str] | None = None,
    min_age_seconds: int = 0,
) -> Job | None:
    candidates = list_pending_job_ids(
        conn,
        min_age_seconds=min_age_seconds,
        allowed_types=allowed_types,
        limit=20,
    )
    for job_id in candidates:
        job = claim_job(conn, job_id, worker_id)
        if job:
            return job
    return None


def reclaim_stale_jobs(
    conn: Any,
    worker_id: str,
    *,
    lock_timeout_seconds: int,
    max_attempts: int,
) -> tuple[list[Job], list[Job]]:
    """Take over processing jobs whose lock expired.

    Jobs still under ``max_attempts`` are re-claimed by ``worker_id`` (status
    stays ``processing``); the rest are failed with ``max_attempts_exceeded``.
    """
    cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
    rows = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        WHERE status = 'processing' AND locked_at IS NOT NULL AND locked_at < ?
        ORDER BY locked_at ASC
        """,
        (cutoff,),
    ).fetchall()
    reclaimed: list[Job] = []
    exhausted: list[Job] = []
    for row in rows:
        job = _row_to_job(row)
        now = utc_now_iso()
        if job.attempts >= max_attempts:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'failed', finished_at = ?, error = 'max_attempts_exceeded'
                WHERE id = ? AND status = 'processing' AND locked_at = ?
                """,
                (now, job.id, job.locked_at),
            )
            target = exhausted
        else:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET attempts = attempts + 1,
                    started_at = ?,
                    locked_by = ?,
                    locked_at = ?,
                    error = 'stale_lock_reclaimed'
                WHERE id = ? AND status = 'processing' AND locked_at = ?
                """,
                (now, worker_id, now, job.id, job.locked_at),
            )
            target = reclaimed
        changed = cursor.rowcount == 1
        conn.commit()
        if changed:
            refreshed = get_job(conn, job.id)
            if refreshed:
                target.append(refreshed)
    return reclaimed, exhausted


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'completed', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'processing'
        """,
        (now, json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'processing'
        """,
        (now, error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        attempts,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    payload = json_loads_or(payload_json, {})
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=payload if isinstance(payload, dict) else {},
        result=json_loads_or(result_json, None),
        attempts=int(attempts or 0),
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


# generation batches


def create_batch(
    conn: Any,
    user_id: str,
    profile_id: str | None,
    requested_count: int,
    *,
    commit: bool = True,
) -> str:
    batch_id = new_id("batch")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO generation_batches
            (id, user_id, profile_id, status, error, requested_count, item_count,
             cancel_requested, created_at, updated_at, finished_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            batch_id,
            user_id,
            profile_id,
            BatchStatus.PENDING.value,
            None,
            requested_count,
            0,
            0,
            now,
            now,
            None,
        ),
    )
    if commit:
        conn.commit()
    return batch_id


def get_batch(conn: Any, batch_id: str) -> GenerationBatch | None:
    row = conn.execute(
        f"SELECT {_BATCH_COLUMNS} FROM generation_batches WHERE id = ?",
        (batch_id,),
    ).fetchone()
    return _row_to_batch(row) if row else None


def get_batch_for_user(conn: Any, batch_id: str, user_id: str) -> GenerationBatch | None:
    row = conn.execute(
        f"SELECT {_BATCH_COLUMNS} FROM generation_batches WHERE id = ? AND user_id = ?",
        (batch_id, user_id),
    ).fetchone()
    return _row_to_batch(row) if row else None


def mark_batch_processing(conn: Any, batch_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE generation_batches
        SET status = 'PROCESSING', updated_at = ?
        WHERE id = ? AND status IN ('PENDING', 'PROCESSING')
        """,
        (utc_now_iso(), batch_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def finish_batch(
    conn: Any,
    batch_id: str,
    status: str,
    *,
    error: str | None = None,
    item_count: int | None = None,
    from_statuses: tuple[str, ...] = _OPEN_BATCH_STATUSES,
) -> bool:
    """Move an open batch to a terminal status.

    Returns False when the batch is no longer in one of ``from_statuses``.
    """
    if status not in BATCH_TERMINAL_STATUSES:
        raise ValueError(f"finish_batch requires a terminal status, got {status}")
    if not from_statuses or any(item not in _OPEN_BATCH_STATUSES for item in from_statuses):
        raise ValueError(f"finish_batch can only leave open statuses, got {from_statuses}")
    now = utc_now_iso()
    placeholders = ",".join(["?"] * len(from_statuses))
    cursor = conn.execute(
        f"""
        UPDATE generation_batches
        SET status = ?,
            error = ?,
            item_count = COALESCE(?, item_count),
            updated_at = ?,
            finished_at = ?
        WHERE id = ? AND status IN ({placeholders})
        """,
        (status, error, item_count, now, now, batch_id, *from_statuses),
    )
    conn.commit()
    return cursor.rowcount == 1


def request_batch_cancel(conn: Any, batch_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE generation_batches
        SET cancel_requested = 1, updated_at = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (utc_now_iso(), batch_id, *_OPEN_BATCH_STATUSES),
    )
    conn.commit()
    return cursor.rowcount == 1


def is_batch_cancel_requested(conn: Any, batch_id: str) -> bool:
    row = conn.execute(
        "SELECT cancel_requested FROM generation_batches WHERE id = ?",
        (batch_id,),
    ).fetchone()
    return bool(row and row[0])


def _row_to_batch(row: tuple) -> GenerationBatch:
    (
        batch_id,
        user_id,
        profile_id,
        status,
        error,
        requested_count,
        item_count,
        cancel_requested,
        created_at,
        updated_at,
        finished_at,
    ) = row
    return GenerationBatch(
        id=batch_id,
        user_id=user_id,
        profile_id=profile_id,
        status=status,
        error=error,
        requested_count=int(requested_count or 0),
        item_count=int(item_count or 0),
        cancel_requested=bool(cancel_requested),
        created_at=created_at,
        updated_at=updated_at,
        finished_at=finished_at,
    )


# profiles


def upsert_profile(conn: Any, profile: dict[str, object]) -> str:
    profile_id = str(profile.get("id") or new_id("profile"))
    user_id = str(profile.get("user_id") or "").strip()
    brand_name = str(profile.get("brand_name") or "").strip()
    if not user_id:
        raise ValueError("profile requires user_id")
    if not brand_name:
        raise ValueError("profile requires brand_name")
    kind = str(profile.get("kind") or "brand")
    if kind not in {"brand", "influencer"}:
        raise ValueError(f"unsupported profile kind {kind}")
    cursor = conn.execute("SELECT created_at FROM profiles WHERE id = ?", (profile_id,))
    row = cursor.fetchone()
    created_at = row[0] if row else utc_now_iso()
    conn.execute(
        """
        INSERT INTO profiles
            (id, user_id, kind, brand_name, industry, brand_description,
             brand_voice_description, primary_goal, do_rules, dont_rules,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            user_id=excluded.user_id,
            kind=excluded.kind,
            brand_name=excluded.brand_name,
            industry=excluded.industry,
            brand_description=excluded.brand_description,
            brand_voice_description=excluded.brand_voice_description,
            primary_goal=excluded.primary_goal,
            do_rules=excluded.do_rules,
            dont_rules=excluded.dont_rules,
            updated_at=excluded.updated_at
        """,
        (
            profile_id,
            user_id,
            kind,
            brand_name,
            _optional_text(profile.get("industry")),
            _optional_text(profile.get("brand_description")),
            _optional_text(profile.get("brand_voice_description")),
            _optional_text(profile.get("primary_goal")),
            _optional_text(profile.get("do_rules")),
            _optional_text(profile.get("dont_rules")),
            created_at,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return profile_id


def get_profile(conn: Any, profile_id: str) -> Profile | None:
    row = conn.execute(
        f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id = ?",
        (profile_id,),
    ).fetchone()
    return Profile(*row) if row else None


def get_latest_profile_for_user(conn: Any, user_id: str) -> Profile | None:
    row = conn.execute(
        f"""
        SELECT {_PROFILE_COLUMNS}
        FROM profiles
        WHERE user_id = ?
        ORDER BY updated_at DESC
        LIMIT 1
        """,
        (user_id,),
    ).fetchone()
    return Profile(*row) if row else None


def list_profiles(conn: Any, user_id: str | None = None) -> list[Profile]:
    if user_id:
        cursor = conn.execute(
            f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
    else:
        cursor = conn.execute(f"SELECT {_PROFILE_COLUMNS} FROM profiles ORDER BY id")
    return [Profile(*row) for row in cursor.fetchall()]


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# posts


def insert_posts(
    conn: Any,
    *,
    user_id: str,
    batch_id: str,
    items: list[dict[str, object]],
    status: str,
) -> int:
    """Insert all posts for a batch at once.

    Returns the number of rows written, or 0 when the batch already has
    posts (a previous attempt got this far).
    """
    if not items:
        return 0
    with conn.transaction():
        if count_posts_for_batch(conn, batch_id):
            return 0
        now = utc_now_iso()
        conn.executemany(
            """
            INSERT INTO posts (id, user_id, batch_id, status, content_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (new_id("post"), user_id, batch_id, status, json_dumps(item), now)
                for item in items
            ],
        )
    return len(items)


def count_posts_for_batch(conn: Any, batch_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM posts WHERE batch_id = ?",
        (batch_id,),
    ).fetchone()
    return int(row[0] or 0)


def list_posts_for_batch(conn: Any, batch_id: str) -> list[Post]:
    cursor = conn.execute(
        """
        SELECT id, user_id, batch_id, status, content_json, created_at
        FROM posts
        WHERE batch_id = ?
        ORDER BY created_at ASC, id ASC
        """,
        (batch_id,),
    )
    posts = []
    for post_id, user_id, post_batch_id, status, content_json, created_at in cursor.fetchall():
        content = json_loads_or(content_json, None)
        if not isinstance(content, dict):
            content = {"raw": content_json}
        posts.append(
            Post(
                id=post_id,
                user_id=user_id,
                batch_id=post_batch_id,
                status=status,
                content=content,
                created_at=created_at,
            )
        )
    return posts


# notifications


def insert_notification(
    conn: Any,
    *,
    user_id: str,
    type: str,
    title: str,
    message: str,
    action_url: str | None = None,
) -> str:
    notification_id = new_id("ntf")
    conn.execute(
        """
        INSERT INTO notifications
            (id, user_id, type, title, message, action_url, is_read, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (notification_id, user_id, type, title, message, action_url, 0, utc_now_iso()),
    )
    conn.commit()
    return notification_id


def list_notifications(
    conn: Any, user_id: str, limit: int = 20, unread_only: bool = False
) -> list[Notification]:
    unread_clause = " AND is_read = 0" if unread_only else ""
    cursor = conn.execute(
        f"""
        SELECT id, user_id, type, title, message, action_url, is_read, created_at
        FROM notifications
        WHERE user_id = ? {unread_clause}
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (user_id, limit),
    )
    return [
        Notification(
            id=row[0],
            user_id=row[1],
            type=row[2],
            title=row[3],
            message=row[4],
            action_url=row[5],
            is_read=bool(row[6]),
            created_at=row[7],
        )
        for row in cursor.fetchall()
    ]


def mark_notification_read(conn: Any, notification_id: str, user_id: str) -> bool:
    cursor = conn.execute(
        "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
        (notification_id, user_id),
    )
    conn.commit()
    return cursor.rowcount == 1


# llm runs


def insert_llm_run(
    conn: Any,
    *,
    job_id: str | None,
    batch_id: str | None,
    provider: str | None,
    model: str | None,
    prompt_name: str | None,
    input_chars: int | None,
    output_chars: int | None,
    latency_ms: int | None,
    ok: bool,
    error: str | None,
) -> str:
    run_id = new_id("llm")
    conn.execute(
        """
        INSERT INTO llm_runs
            (id, ts, job_id, batch_id, provider, model, prompt_name,
             input_chars, output_chars, latency_ms, ok, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            run_id,
            utc_now_iso(),
            job_id,
            batch_id,
            provider,
            model,
            prompt_name,
            input_chars,
            output_chars,
            latency_ms,
            1 if ok else 0,
            error,
        ),
    )
    conn.commit()
    return run_id


def list_llm_runs(conn: Any, limit: int = 10, batch_id: str | None = None) -> list[dict[str, object]]:
    batch_clause = "WHERE batch_id = ?" if batch_id else ""
    params: tuple = (batch_id, limit) if batch_id else (limit,)
    cursor = conn.execute(
        f"""
        SELECT id, ts, job_id, batch_id, provider, model, prompt_name,
               input_chars, output_chars, latency_ms, ok, error
        FROM llm_runs
        {batch_clause}
        ORDER BY ts DESC
        LIMIT ?
        """,
        params,
    )
    items = []
    for row in cursor.fetchall():
        (
            run_id,
            ts,
            job_id,
            run_batch_id,
            provider,
            model,
            prompt_name,
            input_chars,
            output_chars,
            latency_ms,
            ok,
            error,
        ) = row
        items.append(
            {
                "id": run_id,
                "ts": ts,
                "job_id": job_id,
                "batch_id": run_batch_id,
                "provider": provider,
                "model": model,
                "prompt_name": prompt_name,
                "input_chars": input_chars,
                "output_chars": output_chars,
                "latency_ms": latency_ms,
                "ok": bool(ok),
                "error": error,
            }
        )
    return items
