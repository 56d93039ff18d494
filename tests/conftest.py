from __future__ import annotations

import json
import os

import pytest

from contentgen.config import load_runtime_config
from contentgen.llm import LLMAttempt, LLMResponse
from contentgen.storage import init_db, upsert_profile

LIVE_DB_URL = os.environ.get("CG_DB_URL", "")
LIVE_REDIS_URL = os.environ.get("CG_REDIS_URL", "")

_ENV_VARS = [
    "CG_DB_URL",
    "CG_CONFIG_PATH",
    "CG_QUEUE_STRATEGY",
    "CG_REDIS_URL",
    "CG_LLM_PROVIDER",
    "CG_LLM_MODEL",
    "CG_LLM_BASE_URL",
    "CG_LLM_API_KEY",
    "GEMINI_API_KEY",
    "CG_WORKER_CONCURRENCY",
    "CG_ADMIN_TOKEN",
    "CG_LOG_FILE",
    "CG_LOG_LEVELS",
]


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CG_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "data" / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def config(conn):
    return load_runtime_config(conn)


@pytest.fixture
def profile_id(conn):
    return upsert_profile(
        conn,
        {
            "id": "p1",
            "user_id": "u1",
            "brand_name": "Acme",
            "industry": "Coffee",
            "brand_description": "Small-batch roaster",
            "brand_voice_description": "Warm and playful",
            "primary_goal": "Grow foot traffic",
        },
    )


class FakeLLM:
    """Stands in for LLMClient; returns queued texts in order."""

    provider = "fake"
    model = "fake-model"

    def __init__(self, *texts: str) -> None:
        self.texts = list(texts)
        self.prompts: list[str] = []

    def generate(self, prompt, *, on_attempt=None):
        self.prompts.append(prompt)
        text = self.texts.pop(0) if self.texts else ""
        if on_attempt is not None:
            on_attempt(
                LLMAttempt(
                    provider=self.provider,
                    model=self.model,
                    input_chars=len(prompt),
                    output_chars=len(text),
                    latency_ms=1,
                    ok=True,
                    error=None,
                )
            )
        return LLMResponse(text=text, model=self.model, provider=self.provider, latency_ms=1)

    @property
    def calls(self) -> int:
        return len(self.prompts)


def posts_json(count: int) -> str:
    return json.dumps(
        [
            {
                "title": f"Idea {index}",
                "body": f"Caption {index} #coffee",
                "tags": ["coffee"],
                "media_suggestion": "Latte art close-up",
            }
            for index in range(count)
        ]
    )


class RecordingChannel:
    strategy = "recording"

    def __init__(self) -> None:
        self.published: list[str] = []
        self.acked: list[str] = []

    def publish(self, job_id: str) -> bool:
        self.published.append(job_id)
        return True

    def listen(self, timeout_seconds: float) -> list[str]:
        return []

    def ack(self, job_id: str) -> None:
        self.acked.append(job_id)

    def close(self) -> None:
        return None
