"""Tests for the processing job queue."""

import threading
from datetime import datetime, timedelta, timezone

from services.processing_queue import ProcessingJobState


def _memory(repository, local_id, text="hello"):
    memory_id, _ = repository.insert_memory("user-1", local_id, {"memory_type": "moment", "input_text": text})
    return memory_id


def test_schedule_is_idempotent(repository, processing_queue):
    memory_id = _memory(repository, "a")

    assert processing_queue.schedule(memory_id, "moment") is True
    assert processing_queue.schedule(memory_id, "moment", {"again": True}) is False

    job = processing_queue.get_job(memory_id)
    assert job.state == ProcessingJobState.SCHEDULED.value
    assert job.attempts == 0
    assert job.memory_type == "moment"
    assert "again" not in job.metadata


def test_claim_respects_limit_and_skips_claimed(repository, processing_queue):
    ids = [_memory(repository, f"m{i}") for i in range(3)]
    for memory_id in ids:
        processing_queue.schedule(memory_id, "moment")

    first = processing_queue.claim_scheduled_jobs(limit=2, max_attempts=3, claim_timeout_seconds=600)
    second = processing_queue.claim_scheduled_jobs(limit=10, max_attempts=3, claim_timeout_seconds=600)
    third = processing_queue.claim_scheduled_jobs(limit=10, max_attempts=3, claim_timeout_seconds=600)

    assert len(first) == 2
    assert len(second) == 1
    assert third == []
    assert {j.memory_id for j in first + second} == set(ids)
    assert all(j.claim_token for j in first + second)


def test_concurrent_claims_are_disjoint(db, repository, processing_queue):
    ids = [_memory(repository, f"c{i}") for i in range(20)]
    for memory_id in ids:
        processing_queue.schedule(memory_id, "moment")

    results = []
    lock = threading.Lock()

    def claim():
        jobs = processing_queue.claim_scheduled_jobs(limit=5, max_attempts=3, claim_timeout_seconds=600)
        with lock:
            results.extend(j.memory_id for j in jobs)
        db.close_connection()

    threads = [threading.Thread(target=claim) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 20
    assert len(set(results)) == 20


def test_stale_claim_is_reclaimed(db, repository, processing_queue):
    memory_id = _memory(repository, "stale")
    processing_queue.schedule(memory_id, "moment")
    processing_queue.claim_scheduled_jobs(limit=10, max_attempts=3, claim_timeout_seconds=600)

    old = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    with db.get_db_context() as conn:
        conn.execute("UPDATE memory_processing_status SET claimed_at = ? WHERE memory_id = ?", (old, memory_id))

    reclaimed = processing_queue.claim_scheduled_jobs(limit=10, max_attempts=3, claim_timeout_seconds=600)

    assert [j.memory_id for j in reclaimed] == [memory_id]


def test_record_failure_retries_then_fails(repository, processing_queue):
    memory_id = _memory(repository, "flaky")
    processing_queue.schedule(memory_id, "moment")

    assert processing_queue.record_failure(memory_id, "timeout", max_attempts=3) == "scheduled"
    assert processing_queue.record_failure(memory_id, "timeout", max_attempts=3) == "scheduled"
    assert processing_queue.record_failure(memory_id, "still timing out", max_attempts=3) == "failed"

    job = processing_queue.get_job(memory_id)
    assert job.attempts == 3
    assert job.state == "failed"
    assert job.last_error == "still timing out"
    assert job.metadata["failure_reason"] == "still timing out"
    assert processing_queue.claim_scheduled_jobs(limit=10, max_attempts=3, claim_timeout_seconds=600) == []


def test_exhausted_attempts_are_not_claimed(repository, processing_queue):
    memory_id = _memory(repository, "spent")
    processing_queue.schedule(memory_id, "moment")
    processing_queue.record_failure(memory_id, "err", max_attempts=5)

    assert processing_queue.claim_scheduled_jobs(limit=10, max_attempts=1, claim_timeout_seconds=600) == []


def test_mark_processing_and_complete(repository, processing_queue):
    memory_id = _memory(repository, "done")
    processing_queue.schedule(memory_id, "story")
    processing_queue.claim_scheduled_jobs(limit=10, max_attempts=3, claim_timeout_seconds=600)

    assert processing_queue.mark_processing(memory_id) is True
    processing_queue.mark_complete(memory_id, {"duration_ms": 12})

    job = processing_queue.get_job(memory_id)
    assert job.state == "complete"
    assert job.started_at is not None
    assert job.claim_token is None
    assert job.metadata == {"memory_type": "story", "duration_ms": 12}
    assert processing_queue.mark_processing(memory_id) is False


def test_list_jobs_filters_by_state(repository, processing_queue):
    a = _memory(repository, "a")
    b = _memory(repository, "b")
    processing_queue.schedule(a, "moment")
    processing_queue.schedule(b, "moment")
    processing_queue.mark_failed(b, "bad input")

    assert [j.memory_id for j in processing_queue.list_jobs(ProcessingJobState.FAILED)] == [b]
    assert len(processing_queue.list_jobs()) == 2


def test_deleting_memory_removes_job(repository, processing_queue):
    memory_id = _memory(repository, "gone")
    processing_queue.schedule(memory_id, "moment")

    repository.delete_memory(memory_id)

    assert processing_queue.get_job(memory_id) is None
