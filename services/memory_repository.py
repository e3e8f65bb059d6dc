"""Server-side memory records.

All reads and writes of the ``memories`` table go through this module. Inserts
are idempotent on ``(user_id, client_local_id)`` so a replayed save never
creates a second row.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from database import DatabaseManager, get_db_manager
from models import MemoryRecord, MemoryType

logger = logging.getLogger(__name__)

FEED_PAGE_SIZE = 20
FEED_MAX_PAGE_SIZE = 100
SEARCH_PAGE_SIZE = 20
SEARCH_MAX_PAGE_SIZE = 50


@dataclass
class MemoryPage:
    records: List[MemoryRecord] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None
    page: Optional[int] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def decode_cursor(cursor: str) -> Tuple[str, str]:
    """Split a feed cursor into ``(created_at, id)``. Raises ValueError when malformed."""
    created_at, sep, memory_id = cursor.partition("|")
    if not sep or not created_at or not memory_id:
        raise ValueError(f"Invalid feed cursor: {cursor!r}")
    datetime.fromisoformat(created_at)
    return created_at, memory_id


def _sanitize_fts_query(q: str) -> str:
    """Quote each word as an FTS5 prefix term so user input never hits the query syntax."""
    terms = re.findall(r"\w+", q or "")
    return " ".join(f'"{term}"*' for term in terms)


class MemoryRepository:
    """CRUD for memory rows."""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()
        self.db.initialize_database()

    def insert_memory(self, user_id: str, client_local_id: str, fields: Dict[str, Any]) -> Tuple[str, bool]:
        """Insert a memory unless one already exists for this local id.

        Returns ``(memory_id, created)``.
        """
        with self.db.transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT id FROM memories WHERE user_id = ? AND client_local_id = ?",
                (user_id, client_local_id),
            ).fetchone()
            if row:
                logger.info("Memory for local id %s already saved as %s", client_local_id, row["id"])
                return row["id"], False

            memory_id = str(uuid.uuid4())
            now = _now()
            try:
                conn.execute(
                    """
                    INSERT INTO memories (
                        id, user_id, client_local_id, memory_type, title, title_edited_at, input_text,
                        processed_text, generated_title, title_generated_at,
                        tags, photo_urls, video_urls, audio_url, audio_duration,
                        latitude, longitude, location_status, captured_at, memory_date,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory_id,
                        user_id,
                        client_local_id,
                        fields["memory_type"],
                        fields.get("title"),
                        now if fields.get("title") else None,
                        fields.get("input_text"),
                        json.dumps(list(fields.get("tags") or [])),
                        json.dumps(list(fields.get("photo_urls") or [])),
                        json.dumps(list(fields.get("video_urls") or [])),
                        fields.get("audio_url"),
                        fields.get("audio_duration"),
                        fields.get("latitude"),
                        fields.get("longitude"),
                        fields.get("location_status"),
                        _iso(fields.get("captured_at")),
                        _iso(fields.get("memory_date")),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError:
                # lost a race with another writer for the same local id
                row = conn.execute(
                    "SELECT id FROM memories WHERE user_id = ? AND client_local_id = ?",
                    (user_id, client_local_id),
                ).fetchone()
                if row is None:
                    raise
                return row["id"], False

        logger.info("Saved memory %s (%s) for local id %s", memory_id, fields["memory_type"], client_local_id)
        return memory_id, True

    def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        conn = self.db.get_connection()
        row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return MemoryRecord.from_row(row) if row else None

    def get_by_local_id(self, user_id: str, client_local_id: str) -> Optional[MemoryRecord]:
        conn = self.db.get_connection()
        row = conn.execute(
            "SELECT * FROM memories WHERE user_id = ? AND client_local_id = ?",
            (user_id, client_local_id),
        ).fetchone()
        return MemoryRecord.from_row(row) if row else None

    def update_user_title(self, memory_id: str, title: str) -> Optional[MemoryRecord]:
        """Store a user-curated title; generated titles never replace it afterwards."""
        now = _now()
        with self.db.get_db_context() as conn:
            cur = conn.execute(
                "UPDATE memories SET title = ?, title_edited_at = ?, updated_at = ? WHERE id = ?",
                (title.strip(), now, now, memory_id),
            )
        if cur.rowcount == 0:
            return None
        return self.get_memory(memory_id)

    def write_processing_output(
        self,
        memory_id: str,
        *,
        processed_text: Optional[str] = None,
        generated_title: Optional[str] = None,
    ) -> bool:
        """Persist processor output.

        ``title`` follows ``generated_title`` only while the user has not
        edited it.
        """
        now = _now()
        with self.db.get_db_context() as conn:
            cur = conn.execute(
                """
                UPDATE memories
                SET processed_text = COALESCE(?, processed_text),
                    generated_title = COALESCE(?, generated_title),
                    title_generated_at = CASE WHEN ? IS NOT NULL THEN ? ELSE title_generated_at END,
                    title = CASE
                        WHEN title_edited_at IS NULL AND ? IS NOT NULL THEN ?
                        ELSE title
                    END,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    processed_text,
                    generated_title,
                    generated_title, now,
                    generated_title, generated_title,
                    now,
                    memory_id,
                ),
            )
        return cur.rowcount > 0

    def delete_memory(self, memory_id: str) -> bool:
        with self.db.get_db_context() as conn:
            cur = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return cur.rowcount > 0

    def update_memory_date(self, memory_id: str, memory_date: Optional[datetime]) -> Optional[MemoryRecord]:
        """Set when the memory happened; ``None`` clears it."""
        with self.db.get_db_context() as conn:
            cur = conn.execute(
                "UPDATE memories SET memory_date = ?, updated_at = ? WHERE id = ?",
                (_iso(memory_date), _now(), memory_id),
            )
        if cur.rowcount == 0:
            return None
        return self.get_memory(memory_id)

    def list_feed(
        self,
        user_id: str,
        memory_type: Optional[MemoryType] = None,
        cursor: Optional[str] = None,
        limit: int = FEED_PAGE_SIZE,
    ) -> MemoryPage:
        """Newest-first page of a user's memories.

        ``cursor`` is the ``next_cursor`` of the previous page. Raises
        ValueError for a malformed cursor.
        """
        limit = max(1, min(limit or FEED_PAGE_SIZE, FEED_MAX_PAGE_SIZE))
        sql = "SELECT * FROM memories WHERE user_id = ?"
        params: List[Any] = [user_id]
        if memory_type is not None:
            sql += " AND memory_type = ?"
            params.append(MemoryType(memory_type).value)
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            sql += " AND (created_at < ? OR (created_at = ? AND id < ?))"
            params.extend([created_at, created_at, last_id])
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit + 1)

        rows = self.db.get_connection().execute(sql, params).fetchall()
        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = f"{rows[-1]['created_at']}|{rows[-1]['id']}" if has_more else None
        return MemoryPage(
            records=[MemoryRecord.from_row(row) for row in rows],
            has_more=has_more,
            next_cursor=next_cursor,
        )

    def search_memories(
        self,
        user_id: str,
        query: str,
        memory_type: Optional[MemoryType] = None,
        page: int = 1,
        page_size: int = SEARCH_PAGE_SIZE,
    ) -> MemoryPage:
        """Full-text search over titles, text and tags, best match first."""
        page = max(1, page)
        page_size = max(1, min(page_size or SEARCH_PAGE_SIZE, SEARCH_MAX_PAGE_SIZE))
        match = _sanitize_fts_query(query)
        if not match:
            return MemoryPage(page=page)

        sql = """
            SELECT m.*, bm25(memories_fts) AS kw_rank
            FROM memories_fts JOIN memories m ON memories_fts.rowid = m.rowid
            WHERE memories_fts MATCH ? AND m.user_id = ?
        """
        params: List[Any] = [match, user_id]
        if memory_type is not None:
            sql += " AND m.memory_type = ?"
            params.append(MemoryType(memory_type).value)
        sql += " ORDER BY kw_rank, m.created_at DESC LIMIT ? OFFSET ?"
        params.extend([page_size + 1, (page - 1) * page_size])

        rows = self.db.get_connection().execute(sql, params).fetchall()
        has_more = len(rows) > page_size
        return MemoryPage(
            records=[MemoryRecord.from_row(row) for row in rows[:page_size]],
            has_more=has_more,
            page=page,
        )
