import logging

import pytest
import yaml
from fastapi.testclient import TestClient

from conftest import FakeLLM, RecordingChannel, posts_json
from contentgen.api import app, get_channel
from contentgen.storage import get_job, insert_notification, list_jobs
from contentgen.worker import process_job_signal


@pytest.fixture
def channel():
    recording = RecordingChannel()
    app.dependency_overrides[get_channel] = lambda: recording
    yield recording
    app.dependency_overrides.clear()


@pytest.fixture
def client(channel):
    return TestClient(app)


USER = {"X-User-Id": "u1"}


def test_health(client, conn):
    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["db"] == "ok"
    assert payload["strategy"] == "poll"
    assert payload["service"] == "contentgen"


def test_health_reports_configured_app_name(client, conn, tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump({"app": {"name": "acme-content"}}), encoding="utf-8")
    monkeypatch.setenv("CG_CONFIG_PATH", str(path))

    assert client.get("/health").json()["service"] == "acme-content"


def test_generate_requires_user(client):
    response = client.post("/api/content/generate-batch", json={})

    assert response.status_code == 401


def test_generate_batch_flow(client, channel, conn, config, profile_id):
    response = client.post(
        "/api/content/generate-batch",
        json={"profileId": profile_id, "postCount": 2},
        headers=USER,
    )

    assert response.status_code == 200
    batch_id = response.json()["batchId"]
    assert response.json()["success"] is True
    assert len(channel.published) == 1
    job_id = channel.published[0]
    assert get_job(conn, job_id).payload["batchId"] == batch_id

    pending = client.get(f"/api/content/generation-status/{batch_id}", headers=USER)
    assert pending.json() == {"status": "PENDING", "posts": None}

    process_job_signal(conn, config, job_id, "worker-1", logging.getLogger("test"), llm=FakeLLM(posts_json(2)))

    done = client.get(f"/api/content/generation-status/{batch_id}", headers=USER).json()
    assert done["status"] == "COMPLETED"
    assert len(done["posts"]) == 2
    assert done["posts"][0]["status"] == "AWAITING_REVIEW"
    assert done["posts"][0]["content"]["title"].startswith("Idea")

    notes = client.get("/api/notifications", headers=USER).json()
    assert [item["type"] for item in notes] == ["SUCCESS"]
    assert notes[0]["actionUrl"] == f"/plan-review/{batch_id}"


def test_generate_with_unknown_profile(client, channel, conn):
    response = client.post(
        "/api/content/generate-batch",
        json={"profileId": "nope"},
        headers=USER,
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "profile_not_found"
    assert channel.published == []
    assert list_jobs(conn) == []


def test_generate_rejects_bad_post_count(client, channel, profile_id):
    response = client.post(
        "/api/content/generate-batch",
        json={"postCount": 0},
        headers=USER,
    )

    assert response.status_code == 400
    assert "invalid_post_count" in response.json()["detail"]


def test_status_is_scoped_to_user(client, profile_id):
    batch_id = client.post("/api/content/generate-batch", json={}, headers=USER).json()["batchId"]

    response = client.get(
        f"/api/content/generation-status/{batch_id}",
        headers={"X-User-Id": "u2"},
    )

    assert response.status_code == 404
    assert client.get("/api/content/generation-status/missing", headers=USER).status_code == 404


def test_cancel_pending_batch(client, profile_id):
    batch_id = client.post("/api/content/generate-batch", json={}, headers=USER).json()["batchId"]

    response = client.post(f"/api/content/generation-status/{batch_id}/cancel", headers=USER)

    assert response.json() == {"batchId": batch_id, "status": "FAILED"}
    status = client.get(f"/api/content/generation-status/{batch_id}", headers=USER).json()
    assert status["error"] == "generation_canceled"


def test_mark_notification_read(client, conn):
    notification_id = insert_notification(
        conn,
        user_id="u1",
        type="SUCCESS",
        title="Done",
        message="Posts are ready",
        action_url=None,
    )

    assert client.post(f"/api/notifications/{notification_id}/read", headers={"X-User-Id": "u2"}).status_code == 404
    assert client.post(f"/api/notifications/{notification_id}/read", headers=USER).json() == {"ok": True}
    assert client.get("/api/notifications?unread=true", headers=USER).json() == []


def test_admin_endpoints_require_token(client, monkeypatch, profile_id):
    monkeypatch.setenv("CG_ADMIN_TOKEN", "s3cret")
    client.post("/api/content/generate-batch", json={}, headers=USER)

    assert client.get("/admin/api/jobs").status_code == 401
    response = client.get("/admin/api/jobs", headers={"X-Admin-Token": "s3cret"})
    assert response.status_code == 200
    assert response.json()["counts"]["pending"] == 1
    assert response.json()["jobs"][0]["job_type"] == "generate"
    assert client.get("/admin/api/llm-runs", headers={"X-Admin-Token": "s3cret"}).json() == []
