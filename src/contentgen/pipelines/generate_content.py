from __future__ import annotations

import json
import logging
import re
from typing import Any

import jsonschema

from ..config import Config
from ..errors import GenerationCanceled, JobError, LLMError, LLMResponseError, NotFoundError
from ..llm import LLMAttempt, LLMClient, LLMResponse
from ..models import POST_STATUS_AWAITING_REVIEW, BatchStatus, GeneratePayload, GenerationBatch
from ..prompts import PROMPT_NAME, render_generation_prompt, render_repair_prompt
from ..retry import RetryPolicy
from ..storage import (
    count_posts_for_batch,
    finish_batch,
    get_batch,
    get_profile,
    insert_llm_run,
    insert_notification,
    insert_posts,
    is_batch_cancel_requested,
    mark_batch_processing,
    run_store_write,
)
from ..utils import log_event, truncate

ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "body"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "body": {"type": "string", "minLength": 1},
        "tags": {"type": "array", "items": {"type": "string"}},
        "media_suggestion": {"type": ["string", "null"]},
    },
}

_ITEM_VALIDATOR = jsonschema.Draft7Validator(ITEM_SCHEMA)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TAG_SPLIT_RE = re.compile(r"[,\s]+")

_TITLE_KEYS = ("title", "post_idea", "idea")
_BODY_KEYS = ("body", "caption", "text")
_MEDIA_KEYS = ("media_suggestion", "image_suggestion", "video_suggestion")

RAW_LOG_LIMIT = 2000


def store_retry_policy(config: Config) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.store_retry.max_attempts,
        base_delay_seconds=config.store_retry.base_delay_seconds,
        max_delay_seconds=config.store_retry.max_delay_seconds,
    )


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def parse_generated_items(text: str) -> list[Any]:
    """Parse model output into a list of raw items.

    Accepts a top-level array or an object holding it under ``posts`` or
    ``items``.
    """
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise LLMResponseError("invalid_json", text, str(exc)) from exc
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("posts", "items"):
            value = data.get(key)
            if isinstance(value, list):
                return value
    raise LLMResponseError("unexpected_shape", text, "expected a JSON array of posts")


def normalize_item(item: Any) -> dict[str, Any] | None:
    if not isinstance(item, dict):
        return None
    consumed: set[str] = set()
    normalized: dict[str, Any] = {
        "title": _first_text(item, _TITLE_KEYS, consumed),
        "body": _first_text(item, _BODY_KEYS, consumed),
        "tags": _coerce_tags(item.get("tags")),
        "media_suggestion": _first_text(item, _MEDIA_KEYS, consumed) or None,
    }
    consumed.add("tags")
    for key, value in item.items():
        if key in consumed or key in normalized:
            continue
        if isinstance(value, str) and value.strip():
            normalized[key] = value.strip()
    return normalized


def validate_items(items: list[Any]) -> tuple[list[dict[str, Any]], int]:
    valid: list[dict[str, Any]] = []
    dropped = 0
    for item in items:
        normalized = normalize_item(item)
        if normalized is None or not _ITEM_VALIDATOR.is_valid(normalized):
            dropped += 1
            continue
        valid.append(normalized)
    return valid, dropped


def _first_text(item: dict[str, Any], keys: tuple[str, ...], consumed: set[str]) -> str:
    found = ""
    for key in keys:
        if key not in item:
            continue
        consumed.add(key)
        value = item[key]
        if not found and isinstance(value, str) and value.strip():
            found = value.strip()
    return found


def _coerce_tags(value: Any) -> list[str]:
    if isinstance(value, str):
        parts = _TAG_SPLIT_RE.split(value)
    elif isinstance(value, list):
        parts = [part for part in value if isinstance(part, str)]
    else:
        return []
    tags = []
    for part in parts:
        tag = part.strip().lstrip("#")
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def handle_generate(
    conn,
    config: Config,
    payload: GeneratePayload,
    logger: logging.Logger,
    *,
    llm: LLMClient | None = None,
    job_id: str | None = None,
) -> dict[str, object]:
    policy = store_retry_policy(config)
    batch = run_store_write(
        conn,
        policy,
        lambda: get_batch(conn, payload.batch_id),
        logger=logger,
        name="batch_load",
    )
    if batch is None or batch.user_id != payload.user_id:
        raise NotFoundError("batch_not_found", payload.batch_id)
    if batch.is_terminal:
        log_event(
            logger,
            logging.INFO,
            "generation_skipped",
            batch_id=batch.id,
            status=batch.status,
        )
        return {"skipped": True, "batch_id": batch.id, "status": batch.status}

    client = llm or LLMClient(config.llm, logger=logger)
    try:
        outcome = _generate(conn, config, payload, batch, client, policy, logger, job_id)
    except Exception as exc:
        _fail_batch(conn, policy, batch, exc, logger)
        raise

    completed = run_store_write(
        conn,
        policy,
        lambda: finish_batch(
            conn,
            batch.id,
            BatchStatus.COMPLETED.value,
            item_count=int(outcome["item_count"]),
        ),
        logger=logger,
        name="batch_complete",
    )
    if not completed:
        current = get_batch(conn, batch.id)
        status = current.status if current else None
        log_event(
            logger,
            logging.WARNING,
            "generation_discarded",
            batch_id=batch.id,
            status=status,
            item_count=outcome["item_count"],
        )
        return {"skipped": True, "batch_id": batch.id, "status": status}

    _notify(
        conn,
        logger,
        user_id=batch.user_id,
        type="SUCCESS",
        title="Your content plan is ready",
        message=f"{outcome['item_count']} new post ideas are ready for review.",
        action_url=f"/plan-review/{batch.id}",
    )
    log_event(
        logger,
        logging.INFO,
        "generation_completed",
        batch_id=batch.id,
        item_count=outcome["item_count"],
        dropped_count=outcome["dropped_count"],
        model=outcome["model"],
    )
    return {"ok": True, "batch_id": batch.id, **outcome}


def _generate(
    conn,
    config: Config,
    payload: GeneratePayload,
    batch: GenerationBatch,
    llm: LLMClient,
    policy: RetryPolicy,
    logger: logging.Logger,
    job_id: str | None,
) -> dict[str, object]:
    run_store_write(
        conn,
        policy,
        lambda: mark_batch_processing(conn, batch.id),
        logger=logger,
        name="batch_processing",
    )
    profile = get_profile(conn, payload.profile_id)
    if profile is None or profile.user_id != payload.user_id:
        raise NotFoundError("profile_not_found", payload.profile_id)

    post_count = batch.requested_count or config.generation.default_post_count
    prompt = render_generation_prompt(profile, post_count)

    _check_canceled(conn, batch.id)
    response, items = _request_items(conn, config, llm, prompt, batch.id, job_id, logger)
    valid, dropped = validate_items(items)
    if dropped:
        log_event(
            logger,
            logging.WARNING,
            "generation_items_dropped",
            batch_id=batch.id,
            dropped_count=dropped,
            valid_count=len(valid),
        )
    if not valid:
        raise LLMResponseError(
            "no_valid_items",
            response.text,
            f"{dropped} items failed validation",
        )

    _check_canceled(conn, batch.id)
    inserted = run_store_write(
        conn,
        policy,
        lambda: insert_posts(
            conn,
            user_id=batch.user_id,
            batch_id=batch.id,
            items=valid,
            status=POST_STATUS_AWAITING_REVIEW,
        ),
        logger=logger,
        name="posts_insert",
    )
    if inserted == 0:
        # posts from an earlier attempt are kept as-is
        inserted = count_posts_for_batch(conn, batch.id)
        log_event(logger, logging.INFO, "posts_already_written", batch_id=batch.id, count=inserted)
    return {"item_count": inserted, "dropped_count": dropped, "model": response.model}


def _request_items(
    conn,
    config: Config,
    llm: LLMClient,
    prompt: str,
    batch_id: str,
    job_id: str | None,
    logger: logging.Logger,
) -> tuple[LLMResponse, list[Any]]:
    response = llm.generate(
        prompt,
        on_attempt=_run_recorder(conn, logger, job_id, batch_id, PROMPT_NAME),
    )
    try:
        return response, parse_generated_items(response.text)
    except LLMResponseError as exc:
        _log_parse_failure(logger, batch_id, exc)
        if not config.llm.repair_on_parse_error:
            raise

    _check_canceled(conn, batch_id)
    repair = llm.generate(
        render_repair_prompt(prompt),
        on_attempt=_run_recorder(conn, logger, job_id, batch_id, f"{PROMPT_NAME}_repair"),
    )
    try:
        return repair, parse_generated_items(repair.text)
    except LLMResponseError as exc:
        _log_parse_failure(logger, batch_id, exc, repair=True)
        raise


def _log_parse_failure(
    logger: logging.Logger,
    batch_id: str,
    exc: LLMResponseError,
    repair: bool = False,
) -> None:
    log_event(
        logger,
        logging.WARNING,
        "llm_parse_failed",
        batch_id=batch_id,
        code=exc.code,
        repair=repair,
        raw=json.dumps(truncate(exc.raw, RAW_LOG_LIMIT)),
    )


def _run_recorder(conn, logger: logging.Logger, job_id: str | None, batch_id: str, prompt_name: str):
    def _record(attempt: LLMAttempt) -> None:
        try:
            insert_llm_run(
                conn,
                job_id=job_id,
                batch_id=batch_id,
                provider=attempt.provider,
                model=attempt.model,
                prompt_name=prompt_name,
                input_chars=attempt.input_chars,
                output_chars=attempt.output_chars,
                latency_ms=attempt.latency_ms,
                ok=attempt.ok,
                error=attempt.error,
            )
        except Exception as exc:  # noqa: BLE001
            _safe_rollback(conn)
            log_event(logger, logging.WARNING, "llm_run_record_failed", batch_id=batch_id, error=str(exc))

    return _record


def _check_canceled(conn, batch_id: str) -> None:
    if is_batch_cancel_requested(conn, batch_id):
        raise GenerationCanceled()


def batch_error_message(exc: BaseException) -> str:
    if isinstance(exc, LLMError):
        message = exc.code if exc.status is None else f"{exc.code} (HTTP {exc.status})"
    elif isinstance(exc, JobError):
        message = str(exc)
    else:
        message = "internal_error"
    return truncate(message, 500)


def _fail_batch(
    conn,
    policy: RetryPolicy,
    batch: GenerationBatch,
    exc: BaseException,
    logger: logging.Logger,
) -> None:
    message = batch_error_message(exc)
    try:
        changed = run_store_write(
            conn,
            policy,
            lambda: finish_batch(conn, batch.id, BatchStatus.FAILED.value, error=message),
            logger=logger,
            name="batch_fail",
        )
    except Exception as write_exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "batch_fail_write_failed",
            batch_id=batch.id,
            error=str(write_exc),
        )
        return
    log_event(logger, logging.WARNING, "generation_failed", batch_id=batch.id, error=message)
    if changed and not isinstance(exc, GenerationCanceled):
        _notify(
            conn,
            logger,
            user_id=batch.user_id,
            type="WARNING",
            title="Content generation failed",
            message="We couldn't generate your content plan. Please try again.",
            action_url=None,
        )


def _notify(conn, logger: logging.Logger, **fields: Any) -> None:
    try:
        insert_notification(conn, **fields)
    except Exception as exc:  # noqa: BLE001
        _safe_rollback(conn)
        log_event(
            logger,
            logging.WARNING,
            "notification_failed",
            user_id=fields.get("user_id"),
            error=str(exc),
        )


def _safe_rollback(conn) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass
