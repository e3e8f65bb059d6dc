"""
Capture State Service

Holds the single in-progress draft behind the capture screen: memory type,
text, media, tags, dictation and location. Every mutation produces a new
immutable :class:`CaptureDraft`; ``can_save`` is derived from it on demand.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from config import settings
from models import LocationStatus, MemoryType
from services.capture_errors import MediaCapacityError
from services.dictation import DictationSession

logger = logging.getLogger(__name__)


def normalize_tag(tag: str) -> str:
    return (tag or "").strip().casefold()


def normalize_tags(tags) -> Tuple[str, ...]:
    """Trim, case-fold and de-duplicate tags, keeping first-seen order."""
    seen = []
    for tag in tags or ():
        value = normalize_tag(tag)
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


@dataclass(frozen=True)
class CaptureDraft:
    """An in-progress, unsaved capture."""

    memory_type: MemoryType = MemoryType.MOMENT
    input_text: Optional[str] = None
    photo_paths: Tuple[str, ...] = ()
    video_paths: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    audio_path: Optional[str] = None
    audio_duration: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_status: Optional[LocationStatus] = None
    captured_at: Optional[datetime] = None
    memory_date: Optional[datetime] = None
    title: Optional[str] = None
    session_id: Optional[str] = None
    capture_started_at: Optional[datetime] = None
    is_dictating: bool = False
    has_unsaved_changes: bool = False
    error_message: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return bool(self.input_text and self.input_text.strip())

    @property
    def can_save(self) -> bool:
        """Stories need audio; everything else needs text, a photo or a video.

        Tags alone never make a draft saveable.
        """
        if self.memory_type == MemoryType.STORY:
            return bool(self.audio_path)
        return self.has_text or bool(self.photo_paths) or bool(self.video_paths)

    @property
    def can_add_photo(self) -> bool:
        return len(self.photo_paths) < settings.max_photos

    @property
    def can_add_video(self) -> bool:
        return len(self.video_paths) < settings.max_videos

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class LocationProvider(ABC):
    """Source of the device position (GPS plugin, IP lookup, fixed value)."""

    @abstractmethod
    async def get_current_position(self) -> Optional[Tuple[float, float]]:
        """Return ``(latitude, longitude)`` or None when no fix is available."""

    @abstractmethod
    async def get_location_status(self) -> LocationStatus:
        ...


DraftListener = Callable[[CaptureDraft], None]


class CaptureStateService:
    """Owns one draft and the dictation subscription feeding it."""

    def __init__(self, draft: Optional[CaptureDraft] = None):
        self.draft = draft or CaptureDraft()
        self._listeners: List[DraftListener] = []
        self._dictation: Optional[DictationSession] = None
        self._transcript_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _update(self, *, mark_unsaved: bool = True, **changes) -> CaptureDraft:
        if mark_unsaved:
            changes.setdefault("has_unsaved_changes", True)
        self.draft = replace(self.draft, **changes)
        for listener in list(self._listeners):
            listener(self.draft)
        return self.draft

    async def _consume_transcripts(self, session: DictationSession) -> None:
        try:
            async for transcript in session.transcripts():
                self._update(input_text=transcript)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Dictation stream failed: %s", exc)
            self._update(error_message=str(exc) or "Dictation failed")

    async def _cancel_subscription(self) -> None:
        task, self._transcript_task = self._transcript_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def add_listener(self, listener: DraftListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    @property
    def can_save(self) -> bool:
        return self.draft.can_save

    def set_memory_type(self, memory_type: MemoryType) -> CaptureDraft:
        return self._update(memory_type=MemoryType.from_api_value(memory_type))

    def update_input_text(self, input_text: Optional[str]) -> CaptureDraft:
        return self._update(input_text=input_text)

    def set_title(self, title: Optional[str]) -> CaptureDraft:
        return self._update(title=title.strip() if title and title.strip() else None)

    def add_photo(self, path: str) -> CaptureDraft:
        if not self.draft.can_add_photo:
            raise MediaCapacityError("photo", settings.max_photos)
        return self._update(photo_paths=self.draft.photo_paths + (path,))

    def remove_photo(self, index: int) -> CaptureDraft:
        if not 0 <= index < len(self.draft.photo_paths):
            return self.draft
        paths = list(self.draft.photo_paths)
        del paths[index]
        return self._update(photo_paths=tuple(paths))

    def add_video(self, path: str) -> CaptureDraft:
        if not self.draft.can_add_video:
            raise MediaCapacityError("video", settings.max_videos)
        return self._update(video_paths=self.draft.video_paths + (path,))

    def remove_video(self, index: int) -> CaptureDraft:
        if not 0 <= index < len(self.draft.video_paths):
            return self.draft
        paths = list(self.draft.video_paths)
        del paths[index]
        return self._update(video_paths=tuple(paths))

    def add_tag(self, tag: str) -> bool:
        """Add a normalized tag. Returns False for blanks and duplicates."""
        value = normalize_tag(tag)
        if not value or value in self.draft.tags:
            return False
        self._update(tags=self.draft.tags + (value,))
        return True

    def remove_tag(self, tag: str) -> bool:
        value = normalize_tag(tag)
        if value not in self.draft.tags:
            return False
        self._update(tags=tuple(t for t in self.draft.tags if t != value))
        return True

    def set_captured_at(self, timestamp: datetime) -> CaptureDraft:
        return self._update(captured_at=timestamp, mark_unsaved=False)

    def set_memory_date(self, memory_date: Optional[datetime]) -> CaptureDraft:
        return self._update(memory_date=memory_date)

    def set_error(self, message: Optional[str]) -> CaptureDraft:
        return self._update(error_message=message, mark_unsaved=False)

    def clear_error(self) -> CaptureDraft:
        return self._update(error_message=None, mark_unsaved=False)

    # ------------------------------------------------------------------
    # Dictation
    # ------------------------------------------------------------------
    async def start_dictation(self, session: DictationSession) -> bool:
        if self.draft.is_dictating:
            return False

        await self._cancel_subscription()
        session_id = self.draft.session_id or str(uuid.uuid4())
        self._update(
            session_id=session_id,
            error_message=None,
            capture_started_at=self.draft.capture_started_at or datetime.now(timezone.utc),
        )

        self._dictation = session
        self._transcript_task = asyncio.create_task(self._consume_transcripts(session))

        started = await session.start()
        if not started:
            await self._cancel_subscription()
            self._dictation = None
            self._update(error_message=session.error_message or "Failed to start dictation")
            return False

        self._update(is_dictating=True)
        return True

    async def stop_dictation(self) -> CaptureDraft:
        session = self._dictation
        if not self.draft.is_dictating or session is None:
            return self.draft

        result = await session.stop()
        await self._cancel_subscription()
        self._dictation = None

        transcript = result.transcript if result.transcript else self.draft.input_text
        return self._update(
            is_dictating=False,
            input_text=transcript,
            audio_path=result.audio_path,
            audio_duration=result.duration,
        )

    async def cancel_dictation(self) -> CaptureDraft:
        session = self._dictation
        if not self.draft.is_dictating or session is None:
            return self.draft

        await session.cancel()
        await self._cancel_subscription()
        self._dictation = None
        return self._update(is_dictating=False, audio_path=None, audio_duration=None)

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------
    async def capture_location(self, provider: LocationProvider) -> CaptureDraft:
        try:
            position = await provider.get_current_position()
            status = await provider.get_location_status()
        except Exception as exc:
            logger.info("Location unavailable: %s", exc)
            return self._update(
                location_status=LocationStatus.UNAVAILABLE,
                error_message=f"Location unavailable: {exc}",
                mark_unsaved=False,
            )

        if position is None:
            return self._update(location_status=status, mark_unsaved=False)
        latitude, longitude = position
        return self._update(
            latitude=latitude,
            longitude=longitude,
            location_status=status,
            mark_unsaved=False,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def clear(self) -> CaptureDraft:
        """Discard the draft, stopping any dictation in progress."""
        await self.close()
        self.draft = CaptureDraft()
        for listener in list(self._listeners):
            listener(self.draft)
        return self.draft

    async def close(self) -> None:
        """Tear down the dictation subscription; the draft is not touched again."""
        session = self._dictation
        self._dictation = None
        await self._cancel_subscription()
        if session is not None and self.draft.is_dictating:
            await session.cancel()
            self.draft = replace(self.draft, is_dictating=False)
