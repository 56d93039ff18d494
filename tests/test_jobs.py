import threading

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from contentgen.storage import (
    claim_job,
    claim_next_job,
    complete_job,
    count_jobs_by_status,
    enqueue_job,
    fail_job,
    get_job,
    init_db,
    list_jobs,
    reclaim_stale_jobs,
)
from contentgen.utils import utc_now_iso_offset

ALLOWED_EDGES = {
    ("pending", "processing"),
    ("processing", "completed"),
    ("processing", "failed"),
}


def test_enqueue_and_claim_job(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = init_db(str(db_path))
    conn2 = init_db(str(db_path))

    job_id = enqueue_job(conn, "generate", {"userId": "u1", "profileId": "p1", "batchId": "b1"})
    claimed = claim_next_job(conn, "worker-1")

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status == "processing"
    assert claimed.attempts == 1
    assert claimed.locked_by == "worker-1"
    assert claimed.payload == {"userId": "u1", "profileId": "p1", "batchId": "b1"}

    second = claim_next_job(conn2, "worker-2")
    assert second is None


def test_concurrent_claims_have_one_winner(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    setup = init_db(db_path)
    job_id = enqueue_job(setup, "generate", {"userId": "u1", "profileId": "p1", "batchId": "b1"})

    barrier = threading.Barrier(4)
    results: list[object] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        conn = init_db(db_path)
        barrier.wait()
        claimed = claim_job(conn, job_id, worker_id)
        with lock:
            results.append(claimed)
        conn.close()

    threads = [threading.Thread(target=_claim, args=(f"worker-{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [item for item in results if item is not None]
    assert len(results) == 4
    assert len(winners) == 1
    assert get_job(setup, job_id).attempts == 1


def test_job_lifecycle_records_result(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "generate", {"userId": "u1", "profileId": "p1", "batchId": "b1"})
    claimed = claim_next_job(conn, "worker-1")
    assert claimed is not None

    result = {"ok": True, "item_count": 5}
    assert complete_job(conn, job_id, result=result) is True

    jobs = list_jobs(conn, limit=1)
    assert jobs[0].status == "completed"
    assert jobs[0].result == result
    assert jobs[0].finished_at


def test_terminal_jobs_ignore_further_writes(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "generate", None)
    claim_job(conn, job_id, "worker-1")
    assert fail_job(conn, job_id, "boom") is True

    assert complete_job(conn, job_id, result={"ok": True}) is False
    assert fail_job(conn, job_id, "again") is False
    assert claim_job(conn, job_id, "worker-2") is None

    job = get_job(conn, job_id)
    assert job.status == "failed"
    assert job.error == "boom"
    assert job.result is None


def test_complete_requires_processing(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "generate", None)

    assert complete_job(conn, job_id) is False
    assert fail_job(conn, job_id, "nope") is False
    assert get_job(conn, job_id).status == "pending"


def test_claim_next_job_oldest_first_and_min_age(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    older = enqueue_job(conn, "generate", None)
    newer = enqueue_job(conn, "generate", None)
    conn.execute(
        "UPDATE jobs SET requested_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-120), older),
    )
    conn.commit()

    assert claim_next_job(conn, "worker-1", min_age_seconds=60).id == older
    assert claim_next_job(conn, "worker-1", min_age_seconds=60) is None
    assert claim_next_job(conn, "worker-1").id == newer


def test_claim_next_job_filters_types(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    enqueue_job(conn, "other", None)

    assert claim_next_job(conn, "worker-1", allowed_types=["generate"]) is None


def test_stale_lock_reclaims_job(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "generate", None)
    claim_job(conn, job_id, "worker-1")
    conn.execute(
        "UPDATE jobs SET locked_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), job_id),
    )
    conn.commit()

    reclaimed, exhausted = reclaim_stale_jobs(
        conn, "worker-2", lock_timeout_seconds=10, max_attempts=3
    )

    assert [job.id for job in reclaimed] == [job_id]
    assert exhausted == []
    job = get_job(conn, job_id)
    assert job.status == "processing"
    assert job.locked_by == "worker-2"
    assert job.attempts == 2


def test_stale_lock_fails_after_max_attempts(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "generate", None)
    claim_job(conn, job_id, "worker-1")
    conn.execute(
        "UPDATE jobs SET locked_at = ?, attempts = 3 WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), job_id),
    )
    conn.commit()

    reclaimed, exhausted = reclaim_stale_jobs(
        conn, "worker-2", lock_timeout_seconds=10, max_attempts=3
    )

    assert reclaimed == []
    assert [job.id for job in exhausted] == [job_id]
    job = get_job(conn, job_id)
    assert job.status == "failed"
    assert job.error == "max_attempts_exceeded"


def test_fresh_lock_is_not_reclaimed(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "generate", None)
    claim_job(conn, job_id, "worker-1")

    reclaimed, exhausted = reclaim_stale_jobs(
        conn, "worker-2", lock_timeout_seconds=600, max_attempts=3
    )

    assert reclaimed == [] and exhausted == []
    assert get_job(conn, job_id).locked_by == "worker-1"


def test_count_jobs_by_status(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    first = enqueue_job(conn, "generate", None)
    enqueue_job(conn, "generate", None)
    claim_job(conn, first, "worker-1")

    counts = count_jobs_by_status(conn)

    assert counts == {"pending": 1, "processing": 1, "completed": 0, "failed": 0}


OPERATIONS = st.lists(
    st.sampled_from(["claim", "complete", "fail"]),
    min_size=1,
    max_size=8,
)


@given(operations=OPERATIONS)
@settings(
    max_examples=40,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
def test_job_status_only_moves_forward(tmp_path, operations):
    conn = init_db(str(tmp_path / "property.sqlite3"))
    job_id = enqueue_job(conn, "generate", None)
    history = ["pending"]

    for operation in operations:
        if operation == "claim":
            claim_job(conn, job_id, "worker-1")
        elif operation == "complete":
            complete_job(conn, job_id, result={"ok": True})
        else:
            fail_job(conn, job_id, "failed")
        status = get_job(conn, job_id).status
        if status != history[-1]:
            history.append(status)

    for before, after in zip(history, history[1:]):
        assert (before, after) in ALLOWED_EDGES
    assert len(history) <= 3
    conn.close()
