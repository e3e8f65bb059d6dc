"""Processing job queue.

One row per memory in ``memory_processing_status`` tracks the post-save LLM
work (title, cleaned text, narrative). Jobs are claimed in batches inside a
``BEGIN IMMEDIATE`` transaction so two dispatchers never pick the same row.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from database import DatabaseManager, get_db_manager

logger = logging.getLogger(__name__)


class ProcessingJobState(str, Enum):
    """Valid states for a processing job."""

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ProcessingJob:
    """Representation of a job row."""

    memory_id: str
    state: str
    attempts: int
    claim_token: Optional[str]
    claimed_at: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]
    last_error: Optional[str]
    last_error_at: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    last_updated_at: Optional[str] = None

    @property
    def memory_type(self) -> Optional[str]:
        return self.metadata.get("memory_type")

    def to_api(self) -> Dict[str, Any]:
        """Return a safe payload for API responses."""

        return {
            "memory_id": self.memory_id,
            "state": self.state,
            "attempts": self.attempts,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_error": self.last_error,
            "metadata": self.metadata,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingQueue:
    """SQLite-backed processing job queue."""

    def __init__(self, db: Optional[DatabaseManager] = None) -> None:
        self.db = db or get_db_manager()
        self.db.initialize_database()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _merge_metadata(self, conn, memory_id: str, updates: Optional[Dict[str, Any]]) -> Optional[str]:
        row = conn.execute(
            "SELECT metadata FROM memory_processing_status WHERE memory_id = ?", (memory_id,)
        ).fetchone()
        if row is None:
            return None
        metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        metadata.update(updates or {})
        return json.dumps(metadata)

    def _row_to_job(self, row) -> ProcessingJob:
        metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        return ProcessingJob(
            memory_id=row["memory_id"],
            state=row["state"],
            attempts=row["attempts"],
            claim_token=row["claim_token"],
            claimed_at=row["claimed_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            last_error=row["last_error"],
            last_error_at=row["last_error_at"],
            metadata=metadata,
            created_at=row["created_at"],
            last_updated_at=row["last_updated_at"],
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def schedule(self, memory_id: str, memory_type: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Create the job for a memory. Returns False if one already exists."""

        payload = dict(metadata or {})
        payload["memory_type"] = memory_type
        now = _now().isoformat()
        with self.db.get_db_context() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO memory_processing_status (
                    memory_id, state, attempts, metadata, created_at, last_updated_at
                )
                VALUES (?, ?, 0, ?, ?, ?)
                """,
                (memory_id, ProcessingJobState.SCHEDULED.value, json.dumps(payload), now, now),
            )
        created = cur.rowcount > 0
        if created:
            logger.info("Scheduled %s processing for memory %s", memory_type, memory_id)
        return created

    def get_job(self, memory_id: str) -> Optional[ProcessingJob]:
        conn = self.db.get_connection()
        row = conn.execute(
            "SELECT * FROM memory_processing_status WHERE memory_id = ?", (memory_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def list_jobs(self, state: Optional[ProcessingJobState] = None) -> List[ProcessingJob]:
        conn = self.db.get_connection()
        if state is None:
            rows = conn.execute(
                "SELECT * FROM memory_processing_status ORDER BY created_at ASC"
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM memory_processing_status WHERE state = ? ORDER BY created_at ASC",
                (ProcessingJobState(state).value,),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def claim_scheduled_jobs(
        self,
        limit: int,
        max_attempts: int,
        claim_timeout_seconds: int,
    ) -> List[ProcessingJob]:
        """Atomically claim up to ``limit`` scheduled jobs, oldest first.

        A job already claimed by another dispatcher is skipped unless the claim
        is older than ``claim_timeout_seconds``.
        """

        now = _now()
        stale_before = (now - timedelta(seconds=claim_timeout_seconds)).isoformat()
        token = uuid.uuid4().hex
        with self.db.transaction(immediate=True) as conn:
            rows = conn.execute(
                """
                SELECT memory_id FROM memory_processing_status
                WHERE state = ?
                  AND attempts < ?
                  AND (claim_token IS NULL OR claimed_at IS NULL OR claimed_at < ?)
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (ProcessingJobState.SCHEDULED.value, max_attempts, stale_before, limit),
            ).fetchall()
            memory_ids = [row["memory_id"] for row in rows]
            if not memory_ids:
                return []

            placeholders = ", ".join("?" for _ in memory_ids)
            conn.execute(
                f"""
                UPDATE memory_processing_status
                SET claim_token = ?, claimed_at = ?, last_updated_at = ?
                WHERE memory_id IN ({placeholders})
                """,
                (token, now.isoformat(), now.isoformat(), *memory_ids),
            )
            claimed = conn.execute(
                f"""
                SELECT * FROM memory_processing_status
                WHERE claim_token = ? AND memory_id IN ({placeholders})
                ORDER BY created_at ASC
                """,
                (token, *memory_ids),
            ).fetchall()

        jobs = [self._row_to_job(row) for row in claimed]
        logger.debug("Claimed %d processing jobs (token %s)", len(jobs), token)
        return jobs

    def mark_processing(self, memory_id: str) -> bool:
        """Transition a job to processing unless it is already terminal."""

        now = _now().isoformat()
        with self.db.get_db_context() as conn:
            cur = conn.execute(
                """
                UPDATE memory_processing_status
                SET state = ?, started_at = COALESCE(started_at, ?), last_updated_at = ?
                WHERE memory_id = ? AND state IN (?, ?)
                """,
                (
                    ProcessingJobState.PROCESSING.value,
                    now,
                    now,
                    memory_id,
                    ProcessingJobState.SCHEDULED.value,
                    ProcessingJobState.PROCESSING.value,
                ),
            )
        return cur.rowcount > 0

    def mark_complete(self, memory_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        now = _now().isoformat()
        with self.db.transaction(immediate=True) as conn:
            merged = self._merge_metadata(conn, memory_id, metadata)
            conn.execute(
                """
                UPDATE memory_processing_status
                SET state = ?, completed_at = ?, claim_token = NULL, claimed_at = NULL,
                    metadata = COALESCE(?, metadata), last_updated_at = ?
                WHERE memory_id = ?
                """,
                (ProcessingJobState.COMPLETE.value, now, merged, now, memory_id),
            )

    def mark_failed(self, memory_id: str, error: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Terminal failure; the job will not be claimed again."""

        now = _now().isoformat()
        with self.db.transaction(immediate=True) as conn:
            merged = self._merge_metadata(conn, memory_id, metadata)
            conn.execute(
                """
                UPDATE memory_processing_status
                SET state = ?, completed_at = ?, last_error = ?, last_error_at = ?,
                    claim_token = NULL, claimed_at = NULL,
                    metadata = COALESCE(?, metadata), last_updated_at = ?
                WHERE memory_id = ?
                """,
                (ProcessingJobState.FAILED.value, now, error, now, merged, now, memory_id),
            )
        logger.warning("Processing failed permanently for memory %s: %s", memory_id, error)

    def record_failure(self, memory_id: str, error: str, max_attempts: int) -> Optional[str]:
        """Count a transient failure.

        The job returns to ``scheduled`` while attempts remain and becomes
        ``failed`` once ``max_attempts`` is reached. Returns the new state.
        """

        now = _now().isoformat()
        with self.db.transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT attempts FROM memory_processing_status WHERE memory_id = ?", (memory_id,)
            ).fetchone()
            if row is None:
                return None
            attempts = row["attempts"] + 1
            state = ProcessingJobState.SCHEDULED if attempts < max_attempts else ProcessingJobState.FAILED
            merged = None
            if state == ProcessingJobState.FAILED:
                merged = self._merge_metadata(conn, memory_id, {"failure_reason": error})
            conn.execute(
                """
                UPDATE memory_processing_status
                SET state = ?, attempts = ?, last_error = ?, last_error_at = ?,
                    completed_at = CASE WHEN ? = 'failed' THEN ? ELSE completed_at END,
                    claim_token = NULL, claimed_at = NULL,
                    metadata = COALESCE(?, metadata), last_updated_at = ?
                WHERE memory_id = ?
                """,
                (state.value, attempts, error, now, state.value, now, merged, now, memory_id),
            )
        logger.info(
            "Processing attempt %d/%d failed for memory %s: %s", attempts, max_attempts, memory_id, error
        )
        return state.value

    def release_claim(self, memory_id: str) -> None:
        """Drop a claim without touching attempts (dispatcher could not start the job)."""

        now = _now().isoformat()
        with self.db.get_db_context() as conn:
            conn.execute(
                """
                UPDATE memory_processing_status
                SET claim_token = NULL, claimed_at = NULL, last_updated_at = ?
                WHERE memory_id = ? AND state = ?
                """,
                (now, memory_id, ProcessingJobState.SCHEDULED.value),
            )
