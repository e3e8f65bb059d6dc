"""Dictation session abstractions.

A dictation session produces a stream of transcript-so-far strings while the
user speaks, and a final result (transcript plus the recorded audio file) when
it stops. Platform speech plugins push into :class:`QueueDictationSession`,
which turns their callbacks into an async iterator.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class DictationResult:
    """Final output of a dictation session."""

    transcript: str = ""
    audio_path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> Optional[float]:
        value = self.metadata.get("duration")
        return float(value) if value is not None else None


class DictationError(Exception):
    """Raised inside the transcript stream when the recognizer fails."""


class DictationSession(ABC):
    """One recording/recognition session."""

    error_message: Optional[str] = None

    @abstractmethod
    async def start(self) -> bool:
        """Begin listening. Returns False (and sets ``error_message``) on failure."""

    @abstractmethod
    def transcripts(self) -> AsyncIterator[str]:
        """Yield the full transcript so far each time it changes."""

    @abstractmethod
    async def stop(self) -> DictationResult:
        """Stop listening and return the final transcript and audio."""

    @abstractmethod
    async def cancel(self) -> None:
        """Stop listening and discard the recording."""


_END = object()


class QueueDictationSession(DictationSession):
    """Bridges callback-style recognizers into an async transcript stream.

    The recognizer calls :meth:`push_transcript`, :meth:`push_error` and
    :meth:`finish`; consumers iterate :meth:`transcripts`.
    """

    def __init__(self, starter=None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._starter = starter
        self._latest = ""
        self._result: Optional[DictationResult] = None
        self.listening = False
        self.error_message = None

    async def start(self) -> bool:
        if self._starter is not None:
            try:
                started = await self._starter()
            except Exception as exc:
                logger.warning("Dictation failed to start: %s", exc)
                self.error_message = str(exc) or "Failed to start dictation"
                return False
            if not started:
                self.error_message = self.error_message or "Failed to start dictation"
                return False
        self.listening = True
        return True

    def push_transcript(self, transcript: str) -> None:
        self._latest = transcript
        self._queue.put_nowait(transcript)

    def push_error(self, message: str) -> None:
        self.error_message = message
        self._queue.put_nowait(DictationError(message))

    def finish(self, audio_path: Optional[str] = None, duration: Optional[float] = None,
               transcript: Optional[str] = None) -> None:
        """Record the recognizer's final output and close the stream."""
        metadata: Dict[str, Any] = {}
        if duration is not None:
            metadata["duration"] = duration
        self._result = DictationResult(
            transcript=transcript if transcript is not None else self._latest,
            audio_path=audio_path,
            metadata=metadata,
        )
        self._queue.put_nowait(_END)

    async def transcripts(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, DictationError):
                raise item
            yield item

    async def stop(self) -> DictationResult:
        self.listening = False
        if self._result is None:
            self.finish()
        return self._result

    async def cancel(self) -> None:
        self.listening = False
        self._result = DictationResult(transcript="")
        self._queue.put_nowait(_END)
