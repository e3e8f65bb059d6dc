"""Processing dispatcher.

Claims a batch of scheduled processing jobs and hands each one to the
processor for its memory type. The dispatcher has no loop of its own; it is
triggered by the API endpoint or the worker script.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Set

from config import settings
from error_monitoring import capture_error, monitor_errors
from models import MemoryRecord, MemoryType
from services.memory_processors import MemoryProcessor, build_processors
from services.memory_repository import MemoryRepository
from services.processing_queue import ProcessingQueue

logger = logging.getLogger(__name__)

MEMORY_NOT_FOUND = "Memory not found when dispatching"


@dataclass
class DispatchSummary:
    claimed: int = 0
    dispatched: int = 0
    auto_completed: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def has_completed_outputs(record: Optional[MemoryRecord]) -> bool:
    """True when processing output is already present on the memory.

    Title metadata is enough for moments and mementos; stories also need
    processed text.
    """
    if record is None:
        return False
    has_title = bool(
        record.title_generated_at
        or (record.generated_title and record.generated_title.strip())
    )
    if not has_title:
        return False
    if record.memory_type == MemoryType.STORY:
        return bool(record.processed_text and record.processed_text.strip())
    return True


class ProcessingDispatcher:
    def __init__(
        self,
        repository: Optional[MemoryRepository] = None,
        queue: Optional[ProcessingQueue] = None,
        processors: Optional[Dict[MemoryType, MemoryProcessor]] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        claim_timeout_seconds: Optional[int] = None,
    ):
        self.repository = repository or MemoryRepository()
        self.queue = queue or ProcessingQueue(self.repository.db)
        self.processors = processors if processors is not None else build_processors(self.repository, self.queue)
        self.batch_size = batch_size or settings.dispatch_batch_size
        self.max_attempts = max_attempts or settings.dispatch_max_attempts
        self.claim_timeout_seconds = claim_timeout_seconds or settings.dispatch_claim_timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    async def _run_processor(self, processor: MemoryProcessor, memory_id: str) -> None:
        try:
            state = await processor.process(memory_id)
            logger.debug("Processor for %s finished in state %s", memory_id, state)
        except Exception as exc:
            # processors handle their own failures; this covers bugs in them
            capture_error(exc, "dispatch", {"memory_id": memory_id})
            self.queue.record_failure(memory_id, str(exc) or type(exc).__name__, self.max_attempts)

    def _start(self, processor: MemoryProcessor, memory_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_processor(processor, memory_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @monitor_errors("dispatch")
    async def dispatch(self, wait: bool = False) -> DispatchSummary:
        """Claim scheduled jobs and start their processors.

        With ``wait=False`` processors keep running in the background after
        this returns; ``wait=True`` waits for all of them.
        """
        summary = DispatchSummary()
        jobs = self.queue.claim_scheduled_jobs(
            self.batch_size, self.max_attempts, self.claim_timeout_seconds
        )
        summary.claimed = len(jobs)
        if not jobs:
            logger.debug("No scheduled processing jobs")
            return summary

        started: List[asyncio.Task] = []
        for job in jobs:
            record = self.repository.get_memory(job.memory_id)
            if record is None:
                self.queue.mark_failed(job.memory_id, MEMORY_NOT_FOUND, {"failure_reason": MEMORY_NOT_FOUND})
                summary.failed += 1
                continue

            if has_completed_outputs(record):
                self.queue.mark_complete(
                    job.memory_id,
                    {
                        "memory_type": record.memory_type.value,
                        "auto_completed": True,
                        "auto_complete_reason": "output_already_present",
                    },
                )
                logger.info("Auto-completed processing for %s: output already present", job.memory_id)
                summary.auto_completed += 1
                continue

            processor = self.processors.get(record.memory_type)
            if processor is None:
                logger.error("No processor for memory type %s (%s), skipping", record.memory_type, job.memory_id)
                self.queue.release_claim(job.memory_id)
                summary.skipped += 1
                continue

            started.append(self._start(processor, job.memory_id))
            summary.dispatched += 1

        logger.info(
            "Dispatch pass: claimed=%d dispatched=%d auto_completed=%d failed=%d skipped=%d",
            summary.claimed, summary.dispatched, summary.auto_completed, summary.failed, summary.skipped,
        )
        if wait and started:
            await asyncio.gather(*started)
        return summary

    async def drain(self) -> None:
        """Wait for background processor calls started by earlier passes."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
