"""
Memory Save Service

The remote save operation shared by direct captures and queue replays:
upload media, insert the memory record idempotently and schedule its
processing job. Every failure leaves as one of the typed capture errors.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from config import settings
from services.capture_errors import (
    CaptureError,
    OfflineError,
    RetryConfig,
    classify_save_error,
)
from services.capture_state import CaptureDraft
from services.connectivity import ConnectivityProbe
from services.media_storage import MediaStorage, storage_path_for
from services.memory_repository import MemoryRepository
from services.processing_queue import ProcessingQueue

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]


@dataclass
class MemorySaveResult:
    memory_id: str
    photo_urls: List[str] = field(default_factory=list)
    video_urls: List[str] = field(default_factory=list)
    audio_url: Optional[str] = None
    has_location: bool = False
    failed_uploads: List[str] = field(default_factory=list)
    processing_scheduled: bool = False
    created: bool = True

    @property
    def media_urls(self) -> List[str]:
        urls = self.photo_urls + self.video_urls
        if self.audio_url:
            urls.append(self.audio_url)
        return urls


class MemorySaveService:
    """Saves a draft to the server-side store."""

    def __init__(
        self,
        connectivity: ConnectivityProbe,
        storage: MediaStorage,
        repository: MemoryRepository,
        processing_queue: ProcessingQueue,
        upload_retry: Optional[RetryConfig] = None,
        upload_timeout: Optional[float] = None,
    ):
        self.connectivity = connectivity
        self.storage = storage
        self.repository = repository
        self.processing_queue = processing_queue
        self.upload_retry = upload_retry or RetryConfig(
            max_attempts=settings.upload_max_attempts,
            base_delay=settings.upload_retry_base_delay,
        )
        self.upload_timeout = upload_timeout or settings.upload_timeout_seconds

    async def _upload_with_retry(self, bucket: str, storage_path: str, source: Path) -> Optional[str]:
        """Upload one file; returns its public URL or None once attempts run out."""
        attempts = max(1, self.upload_retry.max_attempts)
        for attempt in range(attempts):
            try:
                await asyncio.wait_for(
                    self.storage.upload(bucket, storage_path, source),
                    timeout=self.upload_timeout,
                )
                return self.storage.public_url(bucket, storage_path)
            except Exception as exc:
                error = classify_save_error(exc)
                logger.warning(
                    "Upload %s/%s attempt %d/%d failed: %s",
                    bucket, storage_path, attempt + 1, attempts, error.message,
                )
                if not error.retryable:
                    return None
                if attempt < attempts - 1:
                    await asyncio.sleep(self.upload_retry.delay_for(attempt))
        return None

    async def _upload_files(self, paths, bucket: str, kind: str, user_id: str, local_id: str,
                            failed: List[str]) -> List[str]:
        urls: List[str] = []
        for index, raw_path in enumerate(paths):
            source = Path(raw_path)
            if not source.is_file():
                logger.warning("Skipping missing %s file %s", kind, source)
                continue
            storage_path = storage_path_for(user_id, local_id, kind, index, source)
            url = await self._upload_with_retry(bucket, storage_path, source)
            if url is None:
                failed.append(str(source))
            else:
                urls.append(url)
        return urls

    async def save_memory(
        self,
        draft: CaptureDraft,
        local_id: str,
        user_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MemorySaveResult:
        """Save ``draft`` under the idempotency key ``local_id``.

        Raises OfflineError, NetworkError, StorageQuotaError,
        PermissionDeniedError or SaveError.
        """
        user_id = user_id or settings.default_user_id

        def progress(message: str, value: float) -> None:
            if on_progress is not None:
                on_progress(message, value)

        if not await self.connectivity.is_online():
            raise OfflineError()

        try:
            failed_uploads: List[str] = []
            progress("Uploading photos...", 0.1)
            photo_urls = await self._upload_files(
                draft.photo_paths, settings.photos_bucket, "photo", user_id, local_id, failed_uploads
            )
            progress("Uploading videos...", 0.4)
            video_urls = await self._upload_files(
                draft.video_paths, settings.videos_bucket, "video", user_id, local_id, failed_uploads
            )
            audio_url = None
            if draft.audio_path:
                progress("Uploading audio...", 0.6)
                audio_urls = await self._upload_files(
                    [draft.audio_path], settings.audio_bucket, "audio", user_id, local_id, failed_uploads
                )
                audio_url = audio_urls[0] if audio_urls else None

            progress("Saving memory...", 0.7)
            memory_id, created = self.repository.insert_memory(
                user_id,
                local_id,
                {
                    "memory_type": draft.memory_type.value,
                    "title": draft.title,
                    "input_text": draft.input_text,
                    "tags": list(draft.tags),
                    "photo_urls": photo_urls,
                    "video_urls": video_urls,
                    "audio_url": audio_url,
                    "audio_duration": draft.audio_duration,
                    "latitude": draft.latitude,
                    "longitude": draft.longitude,
                    "location_status": draft.location_status.value if draft.location_status else None,
                    "captured_at": draft.captured_at,
                    "memory_date": draft.memory_date,
                },
            )

            processing_scheduled = False
            if draft.has_text:
                progress("Scheduling processing...", 0.9)
                self.processing_queue.schedule(memory_id, draft.memory_type.value)
                processing_scheduled = True
        except CaptureError:
            raise
        except Exception as exc:
            error = classify_save_error(exc)
            logger.error("Saving memory %s failed (%s): %s", local_id, error.code, exc)
            raise error from exc

        if failed_uploads:
            logger.warning("Memory %s saved without %d media file(s)", memory_id, len(failed_uploads))
        progress("Memory saved", 1.0)
        return MemorySaveResult(
            memory_id=memory_id,
            photo_urls=photo_urls,
            video_urls=video_urls,
            audio_url=audio_url,
            has_location=draft.has_location,
            failed_uploads=failed_uploads,
            processing_scheduled=processing_scheduled,
            created=created,
        )
