"""Tests for the remote save operation."""

import asyncio
import errno
import sqlite3
from unittest.mock import patch

import pytest

from config import settings
from models import LocationStatus, MemoryType
from services.capture_errors import (
    NetworkError,
    OfflineError,
    RetryConfig,
    SaveError,
    StorageQuotaError,
)
from services.capture_state import CaptureDraft
from services.media_storage import LocalMediaStorage
from services.memory_save_service import MemorySaveService


class FlakyStorage(LocalMediaStorage):
    """Local storage where chosen file names hang or fail."""

    def __init__(self, root, hang=(), fail_times=None):
        super().__init__(root, "http://media.test")
        self.hang = set(hang)
        self.fail_times = dict(fail_times or {})
        self.calls = []

    async def upload(self, bucket, storage_path, source):
        self.calls.append(source.name)
        if source.name in self.hang:
            await asyncio.sleep(10)
        remaining = self.fail_times.get(source.name, 0)
        if remaining:
            self.fail_times[source.name] = remaining - 1
            raise ConnectionResetError("connection reset by peer")
        await super().upload(bucket, storage_path, source)


def _service(connectivity, storage, repository, processing_queue, timeout=1.0):
    return MemorySaveService(
        connectivity,
        storage,
        repository,
        processing_queue,
        upload_retry=RetryConfig(max_attempts=3, base_delay=0.0),
        upload_timeout=timeout,
    )


@pytest.mark.asyncio
async def test_save_text_moment_schedules_processing(save_service, repository, processing_queue):
    draft = CaptureDraft(input_text="coffee with mom", tags=("family",), latitude=1.0, longitude=2.0,
                         location_status=LocationStatus.GRANTED)

    result = await save_service.save_memory(draft, "local-1")

    record = repository.get_memory(result.memory_id)
    assert result.created
    assert result.has_location
    assert result.processing_scheduled
    assert record.user_id == settings.default_user_id
    assert record.client_local_id == "local-1"
    assert record.tags == ["family"]
    assert processing_queue.get_job(result.memory_id).state == "scheduled"


@pytest.mark.asyncio
async def test_save_uploads_media_and_reports_progress(save_service, repository, media_storage, make_file):
    draft = CaptureDraft(
        memory_type=MemoryType.STORY,
        input_text="the day we met",
        photo_paths=(make_file("a.JPG"),),
        video_paths=(make_file("clip.mp4"),),
        audio_path=make_file("story.m4a"),
        audio_duration=42.0,
    )
    steps = []

    result = await save_service.save_memory(draft, "story-1", "user-7", on_progress=lambda m, v: steps.append(v))

    assert result.photo_urls == [f"http://media.test/{settings.photos_bucket}/user-7/story-1/photo_0.jpg"]
    assert result.video_urls == [f"http://media.test/{settings.videos_bucket}/user-7/story-1/video_0.mp4"]
    assert result.audio_url.endswith("/user-7/story-1/audio_0.m4a")
    assert len(result.media_urls) == 3
    assert media_storage.exists(settings.photos_bucket, "user-7/story-1/photo_0.jpg")
    assert repository.get_memory(result.memory_id).audio_duration == 42.0
    assert steps == sorted(steps)
    assert steps[-1] == 1.0


@pytest.mark.asyncio
async def test_offline_save_raises_without_writing(connectivity, save_service, repository):
    connectivity.set_online(False)

    with pytest.raises(OfflineError):
        await save_service.save_memory(CaptureDraft(input_text="hi"), "offline-1")

    assert repository.get_by_local_id(settings.default_user_id, "offline-1") is None


@pytest.mark.asyncio
async def test_replayed_save_returns_same_memory(save_service, processing_queue):
    draft = CaptureDraft(input_text="only once")

    first = await save_service.save_memory(draft, "replay")
    second = await save_service.save_memory(draft, "replay")

    assert second.memory_id == first.memory_id
    assert second.created is False
    assert len(processing_queue.list_jobs()) == 1


@pytest.mark.asyncio
async def test_media_only_memory_is_not_processed(save_service, processing_queue, make_file):
    draft = CaptureDraft(photo_paths=(make_file("only.jpg"),))

    result = await save_service.save_memory(draft, "photo-only")

    assert result.processing_scheduled is False
    assert processing_queue.get_job(result.memory_id) is None


@pytest.mark.asyncio
async def test_timed_out_upload_is_dropped_and_rest_saved(
    tmp_path, connectivity, repository, processing_queue, make_file
):
    storage = FlakyStorage(tmp_path / "media", hang={"p2.jpg"})
    service = _service(connectivity, storage, repository, processing_queue, timeout=0.05)
    paths = (make_file("p1.jpg"), make_file("p2.jpg"), make_file("p3.jpg"))

    result = await service.save_memory(CaptureDraft(photo_paths=paths), "partial")

    assert len(result.photo_urls) == 2
    assert result.failed_uploads == [paths[1]]
    assert storage.calls.count("p2.jpg") == 3
    assert repository.get_memory(result.memory_id).photo_urls == result.photo_urls


@pytest.mark.asyncio
async def test_transient_upload_failure_is_retried(tmp_path, connectivity, repository, processing_queue, make_file):
    storage = FlakyStorage(tmp_path / "media", fail_times={"p.jpg": 2})
    service = _service(connectivity, storage, repository, processing_queue)

    result = await service.save_memory(CaptureDraft(photo_paths=(make_file("p.jpg"),)), "retry")

    assert len(result.photo_urls) == 1
    assert storage.calls == ["p.jpg", "p.jpg", "p.jpg"]


@pytest.mark.asyncio
async def test_quota_upload_failure_is_not_retried(
    tmp_path, monkeypatch, connectivity, repository, processing_queue, make_file
):
    storage = FlakyStorage(tmp_path / "media")
    service = _service(connectivity, storage, repository, processing_queue)
    monkeypatch.setattr(settings, "max_file_size", 3)

    result = await service.save_memory(
        CaptureDraft(input_text="big", photo_paths=(make_file("huge.jpg", b"0123456789"),)), "quota"
    )

    assert result.photo_urls == []
    assert storage.calls == ["huge.jpg"]


@pytest.mark.asyncio
async def test_missing_files_are_skipped(save_service, tmp_path, make_file):
    draft = CaptureDraft(photo_paths=(str(tmp_path / "gone.jpg"), make_file("here.jpg")))

    result = await save_service.save_memory(draft, "missing")

    assert len(result.photo_urls) == 1
    assert result.failed_uploads == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, expected",
    [
        (sqlite3.OperationalError("database is locked"), NetworkError),
        (OSError(errno.ENOSPC, "No space left on device"), StorageQuotaError),
        (ValueError("bad row"), SaveError),
    ],
)
async def test_insert_errors_are_classified(save_service, exc, expected):
    with patch.object(save_service.repository, "insert_memory", side_effect=exc):
        with pytest.raises(expected):
            await save_service.save_memory(CaptureDraft(input_text="x"), "broken")
