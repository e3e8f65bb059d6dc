"""
Memory Processors

Per-type post-save processing. Each processor receives only a memory id,
loads the record, drives the job through ``processing`` to a terminal state
and writes the generated text and title back to the memory.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, Type

import llm_utils
from config import settings
from error_monitoring import capture_error
from models import MemoryRecord, MemoryType
from services.memory_repository import MemoryRepository
from services.processing_queue import ProcessingJobState, ProcessingQueue

logger = logging.getLogger(__name__)


class ProcessingError(Exception):
    """Transient processing failure; the job is retried while attempts remain."""


class MemoryProcessor(ABC):
    """Base class. Subclasses implement :meth:`generate`."""

    memory_type: MemoryType = MemoryType.MOMENT

    def __init__(
        self,
        repository: MemoryRepository,
        queue: ProcessingQueue,
        max_attempts: Optional[int] = None,
    ):
        self.repository = repository
        self.queue = queue
        self.max_attempts = max_attempts or settings.dispatch_max_attempts

    @abstractmethod
    async def generate(self, input_text: str) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(processed_text, title)`` for the given input text."""

    def _fail(self, memory_id: str, reason: str) -> str:
        self.queue.mark_failed(
            memory_id,
            reason,
            {"memory_type": self.memory_type.value, "failure_reason": reason},
        )
        return ProcessingJobState.FAILED.value

    async def process(self, memory_id: str) -> str:
        """Process one memory and return the job's resulting state."""
        record: Optional[MemoryRecord] = self.repository.get_memory(memory_id)
        if record is None:
            return self._fail(memory_id, "Memory not found")

        input_text = (record.input_text or "").strip()
        if not input_text:
            return self._fail(memory_id, "Memory has no input_text to process")

        if not self.queue.mark_processing(memory_id):
            logger.info("Job for memory %s is no longer runnable, skipping", memory_id)
            job = self.queue.get_job(memory_id)
            return job.state if job else ProcessingJobState.FAILED.value

        started = time.monotonic()
        try:
            processed_text, title = await self.generate(input_text)
            if not processed_text:
                raise ProcessingError("Failed to process text")
            if not title:
                raise ProcessingError("Failed to generate title")

            self.repository.write_processing_output(
                memory_id, processed_text=processed_text, generated_title=title
            )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            capture_error(exc, "processing", {"memory_id": memory_id, "memory_type": self.memory_type.value})
            return self.queue.record_failure(memory_id, error, self.max_attempts) or ProcessingJobState.FAILED.value

        duration_ms = int((time.monotonic() - started) * 1000)
        self.queue.mark_complete(
            memory_id,
            {"memory_type": self.memory_type.value, "duration_ms": duration_ms},
        )
        logger.info(
            "Processed %s %s in %dms (title %d chars, text %d chars)",
            self.memory_type.value, memory_id, duration_ms, len(title), len(processed_text),
        )
        return ProcessingJobState.COMPLETE.value


class MomentProcessor(MemoryProcessor):
    """Cleaned text and title are generated concurrently from the input."""

    memory_type = MemoryType.MOMENT

    async def generate(self, input_text: str) -> Tuple[Optional[str], Optional[str]]:
        processed_text, title = await asyncio.gather(
            asyncio.to_thread(llm_utils.ollama_clean_text, input_text),
            asyncio.to_thread(llm_utils.ollama_generate_title, input_text, self.memory_type.value),
        )
        return processed_text, title


class MementoProcessor(MomentProcessor):
    memory_type = MemoryType.MEMENTO


class StoryProcessor(MemoryProcessor):
    """Narrative first, then a title drawn from the narrative."""

    memory_type = MemoryType.STORY

    async def generate(self, input_text: str) -> Tuple[Optional[str], Optional[str]]:
        narrative = await asyncio.to_thread(llm_utils.ollama_generate_narrative, input_text)
        if not narrative:
            return None, None
        title = await asyncio.to_thread(llm_utils.ollama_generate_title, narrative, self.memory_type.value)
        return narrative, title


PROCESSORS: Dict[MemoryType, Type[MemoryProcessor]] = {
    MemoryType.MOMENT: MomentProcessor,
    MemoryType.STORY: StoryProcessor,
    MemoryType.MEMENTO: MementoProcessor,
}


def build_processors(repository: MemoryRepository, queue: ProcessingQueue) -> Dict[MemoryType, MemoryProcessor]:
    """One processor instance per memory type, sharing the same stores."""
    return {memory_type: cls(repository, queue) for memory_type, cls in PROCESSORS.items()}
