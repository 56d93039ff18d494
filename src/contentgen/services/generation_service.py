from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..errors import GenerationCanceled, JobError, NotFoundError
from ..models import BatchStatus, GeneratePayload
from ..storage import (
    create_batch,
    enqueue_job,
    finish_batch,
    get_batch_for_user,
    get_latest_profile_for_user,
    get_profile,
    list_posts_for_batch,
    request_batch_cancel,
)
from ..utils import log_event

logger = logging.getLogger("contentgen.generation")


def resolve_post_count(config: Config, post_count: int | None) -> int:
    if post_count is None:
        return config.generation.default_post_count
    if post_count < 1 or post_count > config.generation.max_post_count:
        raise JobError(
            "invalid_post_count",
            f"post_count must be between 1 and {config.generation.max_post_count}",
        )
    return post_count


def request_generation(
    conn,
    channel,
    config: Config,
    user_id: str,
    profile_id: str | None = None,
    post_count: int | None = None,
) -> str:
    """Create a PENDING batch and its job, then wake a worker.

    The batch and job rows are committed together before the signal is
    published.
    """
    count = resolve_post_count(config, post_count)
    if profile_id:
        profile = get_profile(conn, profile_id)
        if profile is None or profile.user_id != user_id:
            raise NotFoundError("profile_not_found", profile_id)
    else:
        profile = get_latest_profile_for_user(conn, user_id)
        if profile is None:
            raise NotFoundError("profile_not_found", f"no profile for user {user_id}")

    with conn.transaction():
        batch_id = create_batch(conn, user_id, profile.id, count, commit=False)
        payload = GeneratePayload(user_id=user_id, profile_id=profile.id, batch_id=batch_id)
        job_id = enqueue_job(conn, payload.job_type, payload.to_dict(), commit=False)

    log_event(
        logger,
        logging.INFO,
        "generation_requested",
        batch_id=batch_id,
        job_id=job_id,
        user_id=user_id,
        profile_id=profile.id,
        post_count=count,
    )
    channel.publish(job_id)
    return batch_id


def get_generation_status(conn, batch_id: str, user_id: str) -> dict[str, Any] | None:
    batch = get_batch_for_user(conn, batch_id, user_id)
    if batch is None:
        return None
    status: dict[str, Any] = {"status": batch.status, "posts": None}
    if batch.status == BatchStatus.COMPLETED.value:
        status["posts"] = [
            {
                "id": post.id,
                "status": post.status,
                "content": post.content,
                "createdAt": post.created_at,
            }
            for post in list_posts_for_batch(conn, batch.id)
        ]
    if batch.status == BatchStatus.FAILED.value:
        status["error"] = batch.error
    return status


def cancel_generation(conn, batch_id: str, user_id: str) -> str | None:
    """Ask a batch to stop. Returns the batch status afterwards, or None.

    A PENDING batch fails right away; a PROCESSING batch is flagged and the
    worker stops at its next cancellation check.
    """
    batch = get_batch_for_user(conn, batch_id, user_id)
    if batch is None:
        return None
    if batch.is_terminal:
        return batch.status
    request_batch_cancel(conn, batch.id)
    if batch.status == BatchStatus.PENDING.value:
        finish_batch(
            conn,
            batch.id,
            BatchStatus.FAILED.value,
            error=GenerationCanceled().code,
            from_statuses=(BatchStatus.PENDING.value,),
        )
    log_event(logger, logging.INFO, "generation_cancel_requested", batch_id=batch.id)
    refreshed = get_batch_for_user(conn, batch_id, user_id)
    return refreshed.status if refreshed else None
