"""Tests for the SQLite-backed offline memory queue."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from models import LocationStatus, MemoryType
from services.capture_errors import DuplicateLocalIdError
from services.capture_state import CaptureDraft
from services.offline_memory_queue import (
    QUEUE_SCHEMA_VERSION,
    OfflineMemoryQueue,
    QueuedMemory,
    QueuedMemoryStatus,
)

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_item(local_id, minutes=0, **kwargs):
    kwargs.setdefault("input_text", f"text for {local_id}")
    return QueuedMemory(local_id=local_id, created_at=BASE_TIME + timedelta(minutes=minutes), **kwargs)


def test_enqueue_and_get_by_local_id(offline_queue):
    item = make_item("a", tags=["beach"], latitude=1.5, longitude=2.5)

    offline_queue.enqueue(item)
    stored = offline_queue.get_by_local_id("a")

    assert stored == item
    assert offline_queue.count() == 1


def test_duplicate_local_id_is_rejected(offline_queue):
    offline_queue.enqueue(make_item("dup"))

    with pytest.raises(DuplicateLocalIdError):
        offline_queue.enqueue(make_item("dup", minutes=5))

    assert offline_queue.count() == 1


def test_get_by_status_returns_oldest_first(offline_queue):
    offline_queue.enqueue(make_item("late", minutes=30))
    offline_queue.enqueue(make_item("early", minutes=0))
    offline_queue.enqueue(make_item("middle", minutes=10, status=QueuedMemoryStatus.FAILED))

    items = offline_queue.get_by_status(QueuedMemoryStatus.QUEUED, QueuedMemoryStatus.FAILED)

    assert [i.local_id for i in items] == ["early", "middle", "late"]
    assert [i.local_id for i in offline_queue.get_by_status(QueuedMemoryStatus.FAILED)] == ["middle"]


def test_update_replaces_item(offline_queue):
    item = offline_queue.enqueue(make_item("a"))
    item.status = QueuedMemoryStatus.FAILED
    item.retry_count = 2
    item.error_message = "boom"

    offline_queue.update(item)

    stored = offline_queue.get_by_local_id("a")
    assert stored.status == QueuedMemoryStatus.FAILED
    assert stored.retry_count == 2
    assert stored.error_message == "boom"
    assert offline_queue.count_by_status(QueuedMemoryStatus.FAILED) == 1


def test_update_unknown_item_raises_key_error(offline_queue):
    with pytest.raises(KeyError):
        offline_queue.update(make_item("ghost"))


def test_remove_is_noop_when_absent(offline_queue):
    offline_queue.enqueue(make_item("a"))

    assert offline_queue.remove("a") is True
    assert offline_queue.remove("a") is False
    assert offline_queue.count() == 0


def test_listeners_see_add_update_remove(offline_queue):
    events = []
    offline_queue.add_listener(events.append)

    item = offline_queue.enqueue(make_item("a", memory_type=MemoryType.STORY))
    offline_queue.update(item)
    offline_queue.remove("a")
    offline_queue.remove("a")

    assert [e.change_type for e in events] == ["added", "updated", "removed"]
    assert all(e.local_id == "a" and e.memory_type == MemoryType.STORY for e in events)


def test_queue_status_labels(offline_queue):
    assert offline_queue.queue_status().primary_status == ""

    offline_queue.enqueue(make_item("q"))
    assert offline_queue.queue_status().primary_status == "Queued"

    offline_queue.enqueue(make_item("s", minutes=1, status=QueuedMemoryStatus.SYNCING))
    assert offline_queue.queue_status().primary_status == "Syncing"

    offline_queue.enqueue(make_item("f", minutes=2, status=QueuedMemoryStatus.FAILED))
    status = offline_queue.queue_status()
    assert status.primary_status == "Needs Attention"
    assert (status.queued, status.syncing, status.failed, status.total) == (1, 1, 1, 3)


def test_recover_interrupted_returns_syncing_items_to_queued(offline_queue):
    offline_queue.enqueue(make_item("stuck", status=QueuedMemoryStatus.SYNCING))
    offline_queue.enqueue(make_item("fine", minutes=1))

    assert offline_queue.recover_interrupted() == 1
    assert offline_queue.get_by_local_id("stuck").status == QueuedMemoryStatus.QUEUED
    assert offline_queue.recover_interrupted() == 0


def test_queue_survives_reopen(tmp_path):
    path = str(tmp_path / "queue.db")
    OfflineMemoryQueue(path).enqueue(make_item("persisted"))

    reopened = OfflineMemoryQueue(path)

    assert reopened.get_by_local_id("persisted") is not None


def test_unreadable_rows_are_skipped(offline_queue):
    offline_queue.enqueue(make_item("good"))
    conn = sqlite3.connect(offline_queue.db_path)
    conn.execute(
        "INSERT INTO queued_memories (local_id, status, created_at, payload) VALUES (?, ?, ?, ?)",
        ("bad", "queued", BASE_TIME.isoformat(), "{not json"),
    )
    conn.commit()
    conn.close()

    assert [i.local_id for i in offline_queue.get_all()] == ["good"]


def test_generate_local_id_is_unique():
    ids = {OfflineMemoryQueue.generate_local_id() for _ in range(50)}
    assert len(ids) == 50


class TestSerialization:

    def test_round_trip_preserves_fields(self):
        item = make_item(
            "rt",
            memory_type=MemoryType.MEMENTO,
            title="Grandma's ring",
            photo_paths=["/p/1.jpg"],
            video_paths=["/v/1.mp4"],
            tags=["family"],
            audio_path="/a/1.m4a",
            audio_duration=12.5,
            latitude=10.0,
            longitude=20.0,
            location_status=LocationStatus.GRANTED,
            captured_at=BASE_TIME,
            memory_date=BASE_TIME - timedelta(days=365),
            status=QueuedMemoryStatus.FAILED,
            retry_count=1,
            last_retry_at=BASE_TIME + timedelta(minutes=1),
            error_message="network",
            error_code="network",
            server_memory_id=None,
        )

        data = json.loads(json.dumps(item.to_dict()))

        assert data["version"] == QUEUE_SCHEMA_VERSION
        assert QueuedMemory.from_dict(data) == item

    def test_older_payload_defaults_missing_fields(self):
        legacy = {
            "version": 1,
            "local_id": "old",
            "memory_type": "moment",
            "input_text": "hello",
            "status": "queued",
            "created_at": BASE_TIME.isoformat(),
        }

        item = QueuedMemory.from_dict(legacy)

        assert item.title is None
        assert item.memory_date is None
        assert item.error_code is None
        assert item.photo_paths == []
        assert item.retry_count == 0
        assert item.version == 1

    def test_unknown_status_and_type_fall_back(self):
        item = QueuedMemory.from_dict({"local_id": "x", "status": "weird", "memory_type": "diary"})

        assert item.status == QueuedMemoryStatus.QUEUED
        assert item.memory_type == MemoryType.MOMENT

    def test_missing_local_id_is_rejected(self):
        with pytest.raises(ValueError):
            QueuedMemory.from_dict({"memory_type": "moment"})

    def test_draft_conversion(self):
        draft = CaptureDraft(
            memory_type=MemoryType.STORY,
            input_text="story",
            audio_path="/a.m4a",
            tags=("one",),
            captured_at=BASE_TIME,
        )

        item = QueuedMemory.from_draft(draft, "local-1")
        back = item.to_draft()

        assert item.local_id == "local-1"
        assert back.memory_type == MemoryType.STORY
        assert back.audio_path == "/a.m4a"
        assert back.tags == ("one",)
        assert back.captured_at == BASE_TIME
        assert back.can_save


def test_recover_interrupted_drops_completed_leftovers(offline_queue):
    offline_queue.enqueue(make_item("done", status=QueuedMemoryStatus.COMPLETED, server_memory_id="srv-1"))
    offline_queue.enqueue(make_item("stuck", minutes=1, status=QueuedMemoryStatus.SYNCING))

    assert offline_queue.recover_interrupted() == 1

    assert offline_queue.get_by_local_id("done") is None
    assert offline_queue.queue_status().total == 1


def test_rewrites_legacy_payload_at_current_version(offline_queue):
    legacy = QueuedMemory.from_dict(
        {"version": 1, "local_id": "old", "input_text": "hi", "created_at": BASE_TIME.isoformat()}
    )
    assert legacy.to_dict()["version"] == 1

    offline_queue.enqueue(legacy)

    conn = sqlite3.connect(offline_queue.db_path)
    payload = conn.execute("SELECT payload FROM queued_memories WHERE local_id = 'old'").fetchone()[0]
    conn.close()
    assert json.loads(payload)["version"] == QUEUE_SCHEMA_VERSION
    assert offline_queue.get_by_local_id("old").version == QUEUE_SCHEMA_VERSION
