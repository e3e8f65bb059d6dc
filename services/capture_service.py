"""Direct save path for a finished capture.

Tries the remote save when online and falls back to the offline queue when
the device is offline or the save fails for a retryable reason.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from services.capture_errors import (
    DraftValidationError,
    NetworkError,
    OfflineError,
    SaveError,
)
from services.capture_state import CaptureDraft
from services.memory_save_service import MemorySaveResult, MemorySaveService
from services.offline_memory_queue import OfflineMemoryQueue, QueuedMemory

logger = logging.getLogger(__name__)


@dataclass
class CaptureOutcome:
    status: str  # saved | queued
    local_id: str
    memory_id: Optional[str] = None
    save_result: Optional[MemorySaveResult] = None
    queued_item: Optional[QueuedMemory] = None
    message: Optional[str] = None

    @property
    def saved(self) -> bool:
        return self.status == "saved"

    @property
    def queued(self) -> bool:
        return self.status == "queued"


class MemoryCaptureService:
    """Submit drafts, queueing them when they cannot be saved right now."""

    def __init__(self, save_service: MemorySaveService, queue: OfflineMemoryQueue,
                 user_id: Optional[str] = None):
        self.save_service = save_service
        self.queue = queue
        self.user_id = user_id

    async def submit(self, draft: CaptureDraft) -> CaptureOutcome:
        """Save ``draft`` or queue it.

        Fatal save errors (storage quota, permission) propagate and nothing is
        queued.
        """
        if not draft.can_save:
            raise DraftValidationError()

        if draft.captured_at is None:
            draft = replace(draft, captured_at=datetime.now(timezone.utc))
        local_id = self.queue.generate_local_id()

        try:
            result = await self.save_service.save_memory(draft, local_id, self.user_id)
        except (OfflineError, NetworkError, SaveError) as exc:
            item = QueuedMemory.from_draft(draft, local_id)
            if not isinstance(exc, OfflineError):
                item.error_message = exc.message
                item.error_code = exc.code
            self.queue.enqueue(item)
            logger.info("Memory %s queued for later sync (%s)", local_id, exc.code)
            return CaptureOutcome(
                status="queued",
                local_id=local_id,
                queued_item=item,
                message=exc.user_message,
            )

        return CaptureOutcome(
            status="saved",
            local_id=local_id,
            memory_id=result.memory_id,
            save_result=result,
        )
