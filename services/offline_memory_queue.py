"""Offline memory queue.

Durable outbox for captures that have not been confirmed by the server yet.
Each item is stored as a versioned JSON payload keyed by its ``local_id`` so
it survives app restarts and can be replayed by the sync service.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config import settings
from models import LocationStatus, MemoryType
from services.capture_errors import DuplicateLocalIdError
from services.capture_state import CaptureDraft, normalize_tags

logger = logging.getLogger(__name__)

QUEUE_SCHEMA_VERSION = 3


class QueuedMemoryStatus(str, Enum):
    """Lifecycle of an outbox item."""

    QUEUED = "queued"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> "QueuedMemoryStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.QUEUED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class QueuedMemory:
    """A capture waiting to be saved to the server."""

    local_id: str
    memory_type: MemoryType = MemoryType.MOMENT
    input_text: Optional[str] = None
    title: Optional[str] = None
    photo_paths: List[str] = field(default_factory=list)
    video_paths: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    audio_path: Optional[str] = None
    audio_duration: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_status: Optional[LocationStatus] = None
    captured_at: Optional[datetime] = None
    memory_date: Optional[datetime] = None
    status: QueuedMemoryStatus = QueuedMemoryStatus.QUEUED
    retry_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    last_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    server_memory_id: Optional[str] = None
    version: int = QUEUE_SCHEMA_VERSION

    @classmethod
    def from_draft(cls, draft: CaptureDraft, local_id: str) -> "QueuedMemory":
        return cls(
            local_id=local_id,
            memory_type=draft.memory_type,
            input_text=draft.input_text,
            title=draft.title,
            photo_paths=list(draft.photo_paths),
            video_paths=list(draft.video_paths),
            tags=list(draft.tags),
            audio_path=draft.audio_path,
            audio_duration=draft.audio_duration,
            latitude=draft.latitude,
            longitude=draft.longitude,
            location_status=draft.location_status,
            captured_at=draft.captured_at or _utcnow(),
            memory_date=draft.memory_date,
        )

    def to_draft(self) -> CaptureDraft:
        """Rebuild the draft payload the save operation expects."""
        return CaptureDraft(
            memory_type=self.memory_type,
            input_text=self.input_text,
            title=self.title,
            photo_paths=tuple(self.photo_paths),
            video_paths=tuple(self.video_paths),
            tags=tuple(self.tags),
            audio_path=self.audio_path,
            audio_duration=self.audio_duration,
            latitude=self.latitude,
            longitude=self.longitude,
            location_status=self.location_status,
            captured_at=self.captured_at,
            memory_date=self.memory_date,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "local_id": self.local_id,
            "memory_type": self.memory_type.value,
            "input_text": self.input_text,
            "title": self.title,
            "photo_paths": list(self.photo_paths),
            "video_paths": list(self.video_paths),
            "tags": list(self.tags),
            "audio_path": self.audio_path,
            "audio_duration": self.audio_duration,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "location_status": self.location_status.value if self.location_status else None,
            "captured_at": _iso(self.captured_at),
            "memory_date": _iso(self.memory_date),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": _iso(self.created_at),
            "last_retry_at": _iso(self.last_retry_at),
            "error_message": self.error_message,
            "error_code": self.error_code,
            "server_memory_id": self.server_memory_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedMemory":
        """Parse any stored version; missing optional fields take defaults."""
        local_id = data.get("local_id")
        if not local_id:
            raise ValueError("queued memory payload has no local_id")

        location_status = data.get("location_status")
        try:
            location_status = LocationStatus(location_status) if location_status else None
        except ValueError:
            location_status = None

        return cls(
            local_id=str(local_id),
            memory_type=MemoryType.from_api_value(data.get("memory_type")),
            input_text=data.get("input_text"),
            title=data.get("title"),
            photo_paths=list(data.get("photo_paths") or []),
            video_paths=list(data.get("video_paths") or []),
            tags=list(normalize_tags(data.get("tags") or [])),
            audio_path=data.get("audio_path"),
            audio_duration=_parse_float(data.get("audio_duration")),
            latitude=_parse_float(data.get("latitude")),
            longitude=_parse_float(data.get("longitude")),
            location_status=location_status,
            captured_at=_parse_dt(data.get("captured_at")),
            memory_date=_parse_dt(data.get("memory_date")),
            status=QueuedMemoryStatus.parse(data.get("status")),
            retry_count=int(data.get("retry_count") or 0),
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
            last_retry_at=_parse_dt(data.get("last_retry_at")),
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
            server_memory_id=data.get("server_memory_id"),
            version=int(data.get("version") or 1),
        )


@dataclass(frozen=True)
class QueueChangeEvent:
    local_id: str
    memory_type: MemoryType
    change_type: str  # added | updated | removed


@dataclass(frozen=True)
class QueueStatus:
    """Counts shown in the sync indicator."""

    queued: int = 0
    syncing: int = 0
    failed: int = 0
    total: int = 0

    @property
    def primary_status(self) -> str:
        if self.failed:
            return "Needs Attention"
        if self.syncing:
            return "Syncing"
        if self.queued:
            return "Queued"
        return ""


QueueListener = Callable[[QueueChangeEvent], None]


class OfflineMemoryQueue:
    """SQLite-backed outbox of unsynced captures."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = str(db_path or settings.queue_db_path)
        self._lock = threading.Lock()
        self._listeners: List[QueueListener] = []
        self._ensure_table()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS queued_memories (
                local_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                payload TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queued_memories_status ON queued_memories (status, created_at ASC)"
        )
        conn.commit()
        conn.close()

    def _notify(self, item: QueuedMemory, change_type: str) -> None:
        event = QueueChangeEvent(item.local_id, item.memory_type, change_type)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning("Queue listener failed for %s: %s", item.local_id, exc)

    def _row_to_item(self, row: sqlite3.Row) -> Optional[QueuedMemory]:
        try:
            return QueuedMemory.from_dict(json.loads(row["payload"]))
        except (ValueError, TypeError) as exc:
            logger.warning("Skipping unreadable queued memory %s: %s", row["local_id"], exc)
            return None

    def _select(self, sql: str, params=()) -> List[QueuedMemory]:
        conn = self._connect()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        items = [self._row_to_item(row) for row in rows]
        return [item for item in items if item is not None]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @staticmethod
    def generate_local_id() -> str:
        return str(uuid.uuid4())

    def add_listener(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def enqueue(self, item: QueuedMemory) -> QueuedMemory:
        """Persist a new item. Raises DuplicateLocalIdError if the id exists."""
        item.version = QUEUE_SCHEMA_VERSION
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT INTO queued_memories (local_id, status, created_at, payload) VALUES (?, ?, ?, ?)",
                    (item.local_id, item.status.value, _iso(item.created_at), json.dumps(item.to_dict())),
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                raise DuplicateLocalIdError(item.local_id) from exc
            finally:
                conn.close()
        logger.info("Queued memory %s (%s) for sync", item.local_id, item.memory_type.value)
        self._notify(item, "added")
        return item

    def get_by_status(self, *statuses: QueuedMemoryStatus) -> List[QueuedMemory]:
        """Items in any of ``statuses``, oldest first."""
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        return self._select(
            f"SELECT * FROM queued_memories WHERE status IN ({placeholders}) ORDER BY created_at ASC, rowid ASC",
            tuple(QueuedMemoryStatus(s).value for s in statuses),
        )

    def get_by_local_id(self, local_id: str) -> Optional[QueuedMemory]:
        items = self._select("SELECT * FROM queued_memories WHERE local_id = ?", (local_id,))
        return items[0] if items else None

    def get_all(self) -> List[QueuedMemory]:
        return self._select("SELECT * FROM queued_memories ORDER BY created_at ASC, rowid ASC")

    def update(self, item: QueuedMemory) -> QueuedMemory:
        """Replace the stored item, rewriting it at the current schema version.

        Raises KeyError when it is not queued.
        """
        item.version = QUEUE_SCHEMA_VERSION
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute(
                    "UPDATE queued_memories SET status = ?, payload = ? WHERE local_id = ?",
                    (item.status.value, json.dumps(item.to_dict()), item.local_id),
                )
                conn.commit()
            finally:
                conn.close()
        if cur.rowcount == 0:
            raise KeyError(item.local_id)
        self._notify(item, "updated")
        return item

    def remove(self, local_id: str) -> bool:
        existing = self.get_by_local_id(local_id)
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute("DELETE FROM queued_memories WHERE local_id = ?", (local_id,))
                conn.commit()
            finally:
                conn.close()
        if cur.rowcount == 0:
            return False
        if existing is not None:
            self._notify(existing, "removed")
        return True

    def count(self) -> int:
        conn = self._connect()
        row = conn.execute("SELECT COUNT(*) FROM queued_memories").fetchone()
        conn.close()
        return int(row[0])

    def count_by_status(self, status: QueuedMemoryStatus) -> int:
        conn = self._connect()
        row = conn.execute(
            "SELECT COUNT(*) FROM queued_memories WHERE status = ?",
            (QueuedMemoryStatus(status).value,),
        ).fetchone()
        conn.close()
        return int(row[0])

    def queue_status(self) -> QueueStatus:
        conn = self._connect()
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM queued_memories GROUP BY status").fetchall()
        conn.close()
        counts = {row["status"]: row["n"] for row in rows}
        return QueueStatus(
            queued=counts.get(QueuedMemoryStatus.QUEUED.value, 0),
            syncing=counts.get(QueuedMemoryStatus.SYNCING.value, 0),
            failed=counts.get(QueuedMemoryStatus.FAILED.value, 0),
            total=sum(counts.values()),
        )

    def recover_interrupted(self) -> int:
        """Clean up after a sync that was killed mid-item.

        Items stranded in ``syncing`` go back to ``queued``; items already
        marked ``completed`` but never removed are dropped. Returns the number
        of items returned to the queue.
        """
        for item in self.get_by_status(QueuedMemoryStatus.COMPLETED):
            logger.info("Dropping completed queued memory %s (%s)", item.local_id, item.server_memory_id)
            self.remove(item.local_id)

        stranded = self.get_by_status(QueuedMemoryStatus.SYNCING)
        for item in stranded:
            item.status = QueuedMemoryStatus.QUEUED
            try:
                self.update(item)
            except KeyError:
                logger.info("Queued memory %s removed during recovery", item.local_id)
        if stranded:
            logger.info("Recovered %d interrupted queued memories", len(stranded))
        return len(stranded)
