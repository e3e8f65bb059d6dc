"""
Database connection management for the Memories backend.

This module provides centralized database connection handling with:
- Per-thread connection reuse
- Transactions with explicit write locking (BEGIN IMMEDIATE)
- Schema initialization for memories, their full-text index and processing jobs
- Connection health monitoring
"""

import sqlite3
import threading
import time
import logging
import os
from typing import Optional, Dict, Any, Iterator
from contextlib import contextmanager
from pathlib import Path

from config import settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    client_local_id TEXT,
    memory_type TEXT NOT NULL,
    title TEXT,
    title_edited_at TEXT,
    input_text TEXT,
    processed_text TEXT,
    generated_title TEXT,
    title_generated_at TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    photo_urls TEXT NOT NULL DEFAULT '[]',
    video_urls TEXT NOT NULL DEFAULT '[]',
    audio_url TEXT,
    audio_duration REAL,
    latitude REAL,
    longitude REAL,
    location_status TEXT,
    captured_at TEXT,
    memory_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_client_local_id
    ON memories (user_id, client_local_id);

CREATE INDEX IF NOT EXISTS idx_memories_feed
    ON memories (user_id, created_at DESC, id DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    title, input_text, processed_text, generated_title, tags,
    content='memories', content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
  INSERT INTO memories_fts(rowid, title, input_text, processed_text, generated_title, tags)
  VALUES (new.rowid, new.title, new.input_text, new.processed_text, new.generated_title, new.tags);
END;
CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE ON memories BEGIN
  INSERT INTO memories_fts(memories_fts, rowid, title, input_text, processed_text, generated_title, tags)
  VALUES ('delete', old.rowid, old.title, old.input_text, old.processed_text, old.generated_title, old.tags);
  INSERT INTO memories_fts(rowid, title, input_text, processed_text, generated_title, tags)
  VALUES (new.rowid, new.title, new.input_text, new.processed_text, new.generated_title, new.tags);
END;
CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
  INSERT INTO memories_fts(memories_fts, rowid, title, input_text, processed_text, generated_title, tags)
  VALUES ('delete', old.rowid, old.title, old.input_text, old.processed_text, old.generated_title, old.tags);
END;

CREATE TABLE IF NOT EXISTS memory_processing_status (
    memory_id TEXT PRIMARY KEY,
    state TEXT NOT NULL DEFAULT 'scheduled',
    attempts INTEGER NOT NULL DEFAULT 0,
    claim_token TEXT,
    claimed_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    last_error TEXT,
    last_error_at TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL,
    last_updated_at TEXT NOT NULL,
    FOREIGN KEY (memory_id) REFERENCES memories (id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_processing_status_state
    ON memory_processing_status (state, created_at ASC);
"""


class DatabaseManager:
    """Centralized database connection manager with per-thread connections."""

    def __init__(self, db_path: str = None):
        self.db_path = str(db_path or settings.db_path)
        self._connections: Dict[int, sqlite3.Connection] = {}
        self._lock = threading.RLock()
        self._schema_ready = False
        self._health_stats = {
            'total_connections': 0,
            'active_connections': 0,
            'failed_connections': 0,
            'last_health_check': None
        }

    def get_connection(self) -> sqlite3.Connection:
        """Get the calling thread's connection, creating it on first use."""
        thread_id = threading.get_ident()

        with self._lock:
            try:
                if thread_id in self._connections:
                    conn = self._connections[thread_id]
                    try:
                        conn.execute("SELECT 1")
                        return conn
                    except sqlite3.Error:
                        del self._connections[thread_id]
                        self._health_stats['active_connections'] -= 1

                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.db_path, timeout=30.0)

                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
                conn.execute("PRAGMA foreign_keys=ON")

                self._connections[thread_id] = conn
                self._health_stats['total_connections'] += 1
                self._health_stats['active_connections'] += 1

                logger.debug(f"Created new database connection for thread {thread_id}")
                return conn

            except sqlite3.Error as e:
                self._health_stats['failed_connections'] += 1
                logger.error(f"Failed to create database connection: {e}")
                raise

    @contextmanager
    def get_db_context(self) -> Iterator[sqlite3.Connection]:
        """Context manager that commits on success and rolls back on error."""
        conn = self.get_connection()
        try:
            yield conn
        except Exception as e:
            conn.rollback()
            logger.error(f"Database operation failed: {e}")
            raise
        else:
            conn.commit()

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Run a block inside one transaction.

        With ``immediate=True`` the write lock is taken up front, so two
        writers racing for the same rows are serialized by SQLite instead of
        both reading the same snapshot.
        """
        conn = self.get_connection()
        if conn.in_transaction:
            conn.commit()
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        else:
            conn.commit()

    def close_connection(self, thread_id: int = None):
        """Close connection for specific thread."""
        if thread_id is None:
            thread_id = threading.get_ident()

        with self._lock:
            if thread_id in self._connections:
                try:
                    self._connections[thread_id].close()
                    del self._connections[thread_id]
                    self._health_stats['active_connections'] -= 1
                    logger.debug(f"Closed database connection for thread {thread_id}")
                except sqlite3.Error as e:
                    logger.error(f"Error closing database connection: {e}")

    def close_all_connections(self):
        """Close all active connections."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._health_stats['active_connections'] = 0

    def health_check(self) -> Dict[str, Any]:
        """Perform health check and return statistics."""
        health_info = {
            'database_path': self.db_path,
            'database_exists': os.path.exists(self.db_path),
            'database_size_mb': 0,
            'connection_test': False,
            'stats': self._health_stats.copy()
        }

        try:
            if health_info['database_exists']:
                health_info['database_size_mb'] = round(
                    os.path.getsize(self.db_path) / (1024 * 1024), 2
                )
            with self.get_db_context() as conn:
                conn.execute("SELECT 1")
                health_info['connection_test'] = True
            self._health_stats['last_health_check'] = time.time()
        except sqlite3.Error as e:
            logger.error(f"Database health check failed: {e}")
            health_info['error'] = str(e)

        return health_info

    def initialize_database(self):
        """Create the memories, search index and processing tables if needed."""
        if self._schema_ready:
            return
        with self._lock:
            conn = self.get_connection()
            conn.executescript(SCHEMA_SQL)
            conn.commit()
            self._schema_ready = True
            logger.info("Database schema ready at %s", self.db_path)


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None
_manager_lock = threading.Lock()

def get_db_manager() -> DatabaseManager:
    """Get global database manager instance (singleton)."""
    global _db_manager
    if _db_manager is None:
        with _manager_lock:
            if _db_manager is None:
                _db_manager = DatabaseManager()
                _db_manager.initialize_database()
    return _db_manager

def close_db_connections():
    """Close all database connections - for cleanup."""
    if _db_manager:
        _db_manager.close_all_connections()


__all__ = [
    'DatabaseManager',
    'SCHEMA_SQL',
    'get_db_manager',
    'close_db_connections',
]
