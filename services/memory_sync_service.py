"""
Memory Sync Service

Drains the offline memory queue through the remote save operation whenever
the device is online: on connectivity changes, on a periodic timer, or on a
manual "sync now". Each queued item is saved under its ``local_id`` so a
replay never creates a second server record.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from config import settings
from error_monitoring import capture_error, monitor_errors
from models import MemoryType
from services.capture_errors import (
    CaptureError,
    OfflineError,
    RetryConfig,
    classify_save_error,
    is_fatal_code,
)
from services.connectivity import ConnectivityProbe
from services.memory_save_service import MemorySaveService
from services.offline_memory_queue import (
    OfflineMemoryQueue,
    QueuedMemory,
    QueuedMemoryStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncCompleteEvent:
    local_id: str
    server_memory_id: str
    memory_type: MemoryType


@dataclass
class SyncReport:
    """What one sync pass did."""

    attempted: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    offline: bool = False
    already_running: bool = False
    synced_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class QueuedItemRemoved(Exception):
    """The queued item was deleted while it was being synced."""


SyncListener = Callable[[SyncCompleteEvent], None]

_PENDING = (QueuedMemoryStatus.QUEUED, QueuedMemoryStatus.FAILED, QueuedMemoryStatus.SYNCING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemorySyncService:
    def __init__(
        self,
        queue: OfflineMemoryQueue,
        connectivity: ConnectivityProbe,
        save_service: MemorySaveService,
        user_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[RetryConfig] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.queue = queue
        self.connectivity = connectivity
        self.save_service = save_service
        self.user_id = user_id
        self.max_attempts = max_attempts or settings.sync_max_attempts
        self.backoff = backoff or RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=settings.sync_backoff_base_seconds,
            max_delay=settings.sync_backoff_max_seconds,
        )
        self.interval_seconds = interval_seconds or settings.sync_interval_seconds

        self._lock = asyncio.Lock()
        self._listeners: List[SyncListener] = []
        self._timer_task: Optional[asyncio.Task] = None
        self._trigger_tasks: Set[asyncio.Task] = set()
        self._remove_connectivity_listener: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def on_sync_complete(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, event: SyncCompleteEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning("Sync listener failed for %s: %s", event.local_id, exc)

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Item selection
    # ------------------------------------------------------------------
    def _backoff_elapsed(self, item: QueuedMemory, now: datetime) -> bool:
        if item.last_retry_at is None:
            return True
        last = item.last_retry_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        delay = self.backoff.delay_for(item.retry_count)
        return (now - last).total_seconds() >= delay

    def is_eligible(self, item: QueuedMemory, now: Optional[datetime] = None, force: bool = False) -> bool:
        """Whether an automatic pass should attempt ``item`` now."""
        if item.status not in _PENDING:
            return False
        if item.retry_count >= self.max_attempts:
            return False
        if item.status == QueuedMemoryStatus.FAILED:
            if is_fatal_code(item.error_code):
                return False
            if not force and not self._backoff_elapsed(item, now or _utcnow()):
                return False
        return True

    # ------------------------------------------------------------------
    # Syncing
    # ------------------------------------------------------------------
    def _persist(self, item: QueuedMemory) -> None:
        try:
            self.queue.update(item)
        except KeyError:
            raise QueuedItemRemoved(item.local_id) from None

    async def _sync_item(self, item: QueuedMemory) -> Optional[CaptureError]:
        """Save one item. Returns the classified error on failure.

        Raises QueuedItemRemoved when the item is deleted from the queue
        before its outcome could be recorded.
        """
        item.status = QueuedMemoryStatus.SYNCING
        item.last_retry_at = _utcnow()
        self._persist(item)

        try:
            result = await self.save_service.save_memory(item.to_draft(), item.local_id, self.user_id)
        except asyncio.CancelledError:
            item.status = QueuedMemoryStatus.QUEUED
            try:
                self.queue.update(item)
            except KeyError:
                pass
            raise
        except Exception as exc:
            error = classify_save_error(exc)
            if isinstance(error, OfflineError):
                # connectivity dropped mid-pass; not the item's fault
                item.status = QueuedMemoryStatus.QUEUED
                self._persist(item)
                return error

            item.retry_count += 1
            item.error_message = error.message
            item.error_code = error.code
            item.status = QueuedMemoryStatus.FAILED
            self._persist(item)
            capture_error(
                exc,
                "sync",
                {"local_id": item.local_id, "retry_count": item.retry_count, "code": error.code},
                severity="warning",
            )
            return error

        item.status = QueuedMemoryStatus.COMPLETED
        item.server_memory_id = result.memory_id
        item.error_message = None
        item.error_code = None
        try:
            self.queue.update(item)
        except KeyError:
            logger.info("Queued memory %s was removed while saving; server copy %s kept",
                        item.local_id, result.memory_id)
        self._emit(SyncCompleteEvent(item.local_id, result.memory_id, item.memory_type))
        self.queue.remove(item.local_id)
        logger.info("Synced queued memory %s -> %s", item.local_id, result.memory_id)
        return None

    @monitor_errors("sync")
    async def sync_queued_memories(self, force: bool = False) -> SyncReport:
        """Run one sync pass. Silently does nothing when offline or already running."""
        report = SyncReport()
        if self._lock.locked():
            report.already_running = True
            return report
        if not await self.connectivity.is_online():
            report.offline = True
            return report

        async with self._lock:
            self.queue.recover_interrupted()
            now = _utcnow()
            for item in self.queue.get_by_status(*_PENDING):
                if not self.is_eligible(item, now, force):
                    report.skipped += 1
                    continue

                try:
                    error = await self._sync_item(item)
                except QueuedItemRemoved:
                    logger.info("Queued memory %s was removed during sync, skipping", item.local_id)
                    continue

                report.attempted += 1
                if error is None:
                    report.synced += 1
                    report.synced_ids.append(item.local_id)
                    continue

                report.errors[item.local_id] = error.code
                if isinstance(error, OfflineError):
                    report.offline = True
                    break
                report.failed += 1

        if report.attempted:
            logger.info(
                "Sync pass finished: %d synced, %d failed, %d skipped",
                report.synced, report.failed, report.skipped,
            )
        return report

    async def sync_memory(self, local_id: str) -> str:
        """Sync one item now, ignoring backoff and resetting exhausted retries.

        Returns the server memory id. Raises OfflineError when offline,
        KeyError when the item is not queued, and the save error on failure.
        """
        if not await self.connectivity.is_online():
            raise OfflineError()

        async with self._lock:
            item = self.queue.get_by_local_id(local_id)
            if item is None:
                raise KeyError(local_id)

            if item.retry_count >= self.max_attempts or is_fatal_code(item.error_code):
                item.retry_count = 0
                item.error_code = None

            try:
                error = await self._sync_item(item)
            except QueuedItemRemoved:
                raise KeyError(local_id) from None
            if error is not None:
                raise error
            return item.server_memory_id

    # ------------------------------------------------------------------
    # Automatic sync
    # ------------------------------------------------------------------
    def _trigger(self) -> None:
        if self._lock.locked():
            return
        task = asyncio.get_running_loop().create_task(self.sync_queued_memories())
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_done)

    def _trigger_done(self, task: asyncio.Task) -> None:
        self._trigger_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Triggered sync pass failed: %s", exc)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self._trigger()

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sync_queued_memories()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Timed sync pass failed: %s", exc)

    def start_auto_sync(self) -> None:
        """Sync on connectivity restore and every ``interval_seconds``. Needs a running loop."""
        if self._timer_task is not None:
            return
        self.queue.recover_interrupted()
        self._remove_connectivity_listener = self.connectivity.add_listener(self._on_connectivity_change)
        self._timer_task = asyncio.get_running_loop().create_task(self._run_timer())
        logger.info("Auto sync started (every %ss)", self.interval_seconds)

    async def stop_auto_sync(self) -> None:
        if self._remove_connectivity_listener is not None:
            self._remove_connectivity_listener()
            self._remove_connectivity_listener = None

        tasks = list(self._trigger_tasks)
        if self._timer_task is not None:
            tasks.append(self._timer_task)
            self._timer_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
