from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import PayloadError


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


JOB_TERMINAL_STATUSES = {JobStatus.COMPLETED.value, JobStatus.FAILED.value}


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


BATCH_TERMINAL_STATUSES = {BatchStatus.COMPLETED.value, BatchStatus.FAILED.value}

POST_STATUS_AWAITING_REVIEW = "AWAITING_REVIEW"

NOTIFICATION_TYPES = ["SYSTEM", "ADMIN_MESSAGE", "ANNOUNCEMENT", "WARNING", "SUCCESS"]


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    attempts: int
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None


@dataclass(frozen=True)
class GenerationBatch:
    id: str
    user_id: str
    profile_id: str | None
    status: str
    error: str | None
    requested_count: int
    item_count: int
    cancel_requested: bool
    created_at: str
    updated_at: str
    finished_at: str | None

    @property
    def is_terminal(self) -> bool:
        return self.status in BATCH_TERMINAL_STATUSES


@dataclass(frozen=True)
class Profile:
    id: str
    user_id: str
    kind: str
    brand_name: str
    industry: str | None
    brand_description: str | None
    brand_voice_description: str | None
    primary_goal: str | None
    do_rules: str | None
    dont_rules: str | None


@dataclass(frozen=True)
class Post:
    id: str
    user_id: str
    batch_id: str
    status: str
    content: dict[str, object]
    created_at: str


@dataclass(frozen=True)
class Notification:
    id: str
    user_id: str
    type: str
    title: str
    message: str
    action_url: str | None
    is_read: bool
    created_at: str


@dataclass(frozen=True)
class GeneratePayload:
    user_id: str
    profile_id: str
    batch_id: str

    job_type = "generate"

    def to_dict(self) -> dict[str, object]:
        return {"userId": self.user_id, "profileId": self.profile_id, "batchId": self.batch_id}

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> "GeneratePayload":
        user_id = payload.get("userId")
        profile_id = payload.get("profileId") or payload.get("brandProfileId")
        batch_id = payload.get("batchId")
        missing = [
            name
            for name, value in (
                ("userId", user_id),
                ("profileId", profile_id),
                ("batchId", batch_id),
            )
            if not isinstance(value, str) or not value
        ]
        if missing:
            raise PayloadError(f"generate payload missing {','.join(missing)}")
        return cls(user_id=str(user_id), profile_id=str(profile_id), batch_id=str(batch_id))


# Add new payload classes here and to PAYLOAD_TYPES; worker dispatch is keyed on them.
JobPayload = Union[GeneratePayload]

PAYLOAD_TYPES: dict[str, type[GeneratePayload]] = {
    GeneratePayload.job_type: GeneratePayload,
}

JOB_TYPES = list(PAYLOAD_TYPES)


def decode_payload(job_type: str, payload: dict[str, object] | None) -> JobPayload:
    payload_cls = PAYLOAD_TYPES.get(job_type)
    if payload_cls is None:
        raise PayloadError(f"unsupported job type {job_type}")
    return payload_cls.from_dict(payload or {})
