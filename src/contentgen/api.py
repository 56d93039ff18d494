from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from .channels import NotificationChannel, build_channel
from .config import Config, ConfigError, load_runtime_config, resolve_queue_strategy
from .errors import JobError, NotFoundError
from .services.generation_service import (
    cancel_generation,
    get_generation_status,
    request_generation,
)
from .storage import (
    count_jobs_by_status,
    init_db,
    list_jobs,
    list_llm_runs,
    list_notifications,
    mark_notification_read,
)
from .utils import configure_logging, log_event

app = FastAPI(title="contentgen API")

logger = logging.getLogger("contentgen.api")

_CHANNEL: NotificationChannel | None = None


class GenerateBatchRequest(BaseModel):
    profileId: str | None = None
    postCount: int | None = None


@app.on_event("startup")
def _startup() -> None:
    configure_logging("contentgen.api")


def get_conn() -> Iterator[object]:
    conn = init_db()
    try:
        yield conn
    finally:
        conn.close()


def get_config(conn=Depends(get_conn)) -> Config:
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        raise HTTPException(status_code=500, detail="config_error") from exc


def get_channel(config: Config = Depends(get_config)) -> NotificationChannel:
    global _CHANNEL
    if _CHANNEL is None:
        try:
            _CHANNEL = build_channel(config, logger)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            raise HTTPException(status_code=500, detail="config_error") from exc
    return _CHANNEL


def require_user(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="unauthorized")
    return user_id


def _require_admin_token(request: Request, config: Config = Depends(get_config)) -> None:
    token = config.admin_token
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


@app.get("/health")
def health(conn=Depends(get_conn), config: Config = Depends(get_config)) -> dict[str, object]:
    try:
        conn.execute("SELECT 1").fetchone()
        db_status = "ok"
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "health_db_failed", error=str(exc))
        db_status = "error"
    try:
        strategy = resolve_queue_strategy(config)
    except ConfigError:
        strategy = "invalid"
    return {
        "ok": db_status == "ok",
        "service": config.app.name,
        "db": db_status,
        "strategy": strategy,
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/api/content/generate-batch")
def generate_batch(
    body: GenerateBatchRequest,
    user_id: str = Depends(require_user),
    conn=Depends(get_conn),
    config: Config = Depends(get_config),
    channel: NotificationChannel = Depends(get_channel),
) -> dict[str, object]:
    try:
        batch_id = request_generation(
            conn,
            channel,
            config,
            user_id,
            profile_id=body.profileId,
            post_count=body.postCount,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.code) from exc
    except JobError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "batchId": batch_id}


@app.get("/api/content/generation-status/{batch_id}")
def generation_status(
    batch_id: str,
    user_id: str = Depends(require_user),
    conn=Depends(get_conn),
) -> dict[str, object]:
    status = get_generation_status(conn, batch_id, user_id)
    if status is None:
        raise HTTPException(status_code=404, detail="batch_not_found")
    return status


@app.post("/api/content/generation-status/{batch_id}/cancel")
def generation_cancel(
    batch_id: str,
    user_id: str = Depends(require_user),
    conn=Depends(get_conn),
) -> dict[str, object]:
    status = cancel_generation(conn, batch_id, user_id)
    if status is None:
        raise HTTPException(status_code=404, detail="batch_not_found")
    return {"batchId": batch_id, "status": status}


@app.get("/api/notifications")
def notifications(
    limit: int = 20,
    unread: bool = False,
    user_id: str = Depends(require_user),
    conn=Depends(get_conn),
) -> list[dict[str, object]]:
    return [
        {
            "id": item.id,
            "type": item.type,
            "title": item.title,
            "message": item.message,
            "actionUrl": item.action_url,
            "isRead": item.is_read,
            "createdAt": item.created_at,
        }
        for item in list_notifications(conn, user_id, limit=limit, unread_only=unread)
    ]


@app.post("/api/notifications/{notification_id}/read")
def notification_read(
    notification_id: str,
    user_id: str = Depends(require_user),
    conn=Depends(get_conn),
) -> dict[str, object]:
    if not mark_notification_read(conn, notification_id, user_id):
        raise HTTPException(status_code=404, detail="notification_not_found")
    return {"ok": True}


@app.get("/admin/api/jobs", dependencies=[Depends(_require_admin_token)])
def admin_jobs(
    limit: int = 20,
    status: str | None = None,
    conn=Depends(get_conn),
) -> dict[str, object]:
    return {
        "counts": count_jobs_by_status(conn),
        "jobs": [
            {
                "id": job.id,
                "job_type": job.job_type,
                "status": job.status,
                "attempts": job.attempts,
                "requested_at": job.requested_at,
                "started_at": job.started_at or "",
                "finished_at": job.finished_at or "",
                "locked_by": job.locked_by or "",
                "error": job.error or "",
                "result": job.result or {},
            }
            for job in list_jobs(conn, limit=limit, status=status)
        ],
    }


@app.get("/admin/api/llm-runs", dependencies=[Depends(_require_admin_token)])
def admin_llm_runs(
    limit: int = 20,
    batch_id: str | None = None,
    conn=Depends(get_conn),
) -> list[dict[str, object]]:
    return list_llm_runs(conn, limit=limit, batch_id=batch_id)
