from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
import json


class MemoryType(str, Enum):
    """Kinds of memory a user can capture."""

    MOMENT = "moment"
    STORY = "story"
    MEMENTO = "memento"

    @classmethod
    def from_api_value(cls, value: Optional[str]) -> "MemoryType":
        """Parse a stored/API value, defaulting to moment for unknown input."""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.MOMENT

    @property
    def fallback_title(self) -> str:
        return f"Untitled {self.value.title()}"


class MemoryTypeFilter(str, Enum):
    """Feed filter: one memory type or all of them."""

    ALL = "all"
    MOMENT = "moment"
    STORY = "story"
    MEMENTO = "memento"

    def to_memory_type(self) -> Optional[MemoryType]:
        return None if self is MemoryTypeFilter.ALL else MemoryType(self.value)


class LocationStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNAVAILABLE = "unavailable"


class MemoryRecord(BaseModel):
    """Canonical server-side memory row."""

    id: str
    user_id: str
    client_local_id: Optional[str] = None
    memory_type: MemoryType
    title: Optional[str] = None
    title_edited_at: Optional[datetime] = None
    input_text: Optional[str] = None
    processed_text: Optional[str] = None
    generated_title: Optional[str] = None
    title_generated_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    photo_urls: List[str] = Field(default_factory=list)
    video_urls: List[str] = Field(default_factory=list)
    audio_url: Optional[str] = None
    audio_duration: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_status: Optional[LocationStatus] = None
    captured_at: Optional[datetime] = None
    memory_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def display_text(self) -> Optional[str]:
        """Processed text when present, else the raw input, for every type."""
        if self.processed_text and self.processed_text.strip():
            return self.processed_text
        if self.input_text and self.input_text.strip():
            return self.input_text
        return None

    @property
    def display_title(self) -> str:
        if self.title and self.title.strip():
            return self.title
        if self.generated_title and self.generated_title.strip():
            return self.generated_title
        return self.memory_type.fallback_title

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def title_edited_by_user(self) -> bool:
        return self.title_edited_at is not None

    @classmethod
    def from_row(cls, row) -> "MemoryRecord":
        data = dict(row)
        for key in ("tags", "photo_urls", "video_urls"):
            data[key] = json.loads(data.get(key) or "[]")
        return cls(**data)


class ProcessingJobOut(BaseModel):
    memory_id: str
    state: str
    attempts: int
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MemoryOut(BaseModel):
    """API view of a memory with display fields resolved."""

    id: str
    memory_type: MemoryType
    title: str
    text: Optional[str] = None
    input_text: Optional[str] = None
    processed_text: Optional[str] = None
    generated_title: Optional[str] = None
    title_generated_at: Optional[datetime] = None
    title_edited_by_user: bool = False
    tags: List[str] = Field(default_factory=list)
    photo_urls: List[str] = Field(default_factory=list)
    video_urls: List[str] = Field(default_factory=list)
    audio_url: Optional[str] = None
    has_location: bool = False
    captured_at: Optional[datetime] = None
    memory_date: Optional[datetime] = None
    created_at: datetime
    processing: Optional[ProcessingJobOut] = None

    @classmethod
    def from_record(cls, record: MemoryRecord, processing: Optional[ProcessingJobOut] = None) -> "MemoryOut":
        return cls(
            id=record.id,
            memory_type=record.memory_type,
            title=record.display_title,
            text=record.display_text,
            input_text=record.input_text,
            processed_text=record.processed_text,
            generated_title=record.generated_title,
            title_generated_at=record.title_generated_at,
            title_edited_by_user=record.title_edited_by_user,
            tags=record.tags,
            photo_urls=record.photo_urls,
            video_urls=record.video_urls,
            audio_url=record.audio_url,
            has_location=record.has_location,
            captured_at=record.captured_at,
            memory_date=record.memory_date,
            created_at=record.created_at,
            processing=processing,
        )


class TitleUpdate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class MemoryDateUpdate(BaseModel):
    memory_date: Optional[datetime] = None


class MemoryPageOut(BaseModel):
    memories: List[MemoryOut] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None
    page: Optional[int] = None


class DispatchResponse(BaseModel):
    claimed: int
    dispatched: int
    auto_completed: int
    failed: int
    skipped: int


class MemoryCreate(BaseModel):
    """Text-only save request; media is uploaded by the client path."""

    local_id: str = Field(..., min_length=1, max_length=100)
    memory_type: MemoryType = MemoryType.MOMENT
    input_text: Optional[str] = None
    title: Optional[str] = Field(None, max_length=200)
    tags: List[str] = Field(default_factory=list)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_status: Optional[LocationStatus] = None
    captured_at: Optional[datetime] = None
    memory_date: Optional[datetime] = None


class MemorySaveOut(BaseModel):
    memory_id: str
    created: bool
    has_location: bool
    processing_scheduled: bool
    media_urls: List[str] = Field(default_factory=list)
