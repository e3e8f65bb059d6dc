# ──────────────────────────────────────────────────────────────────────────────
# File: services/capture_errors.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Capture Error Taxonomy

Typed errors raised by the save and sync pipeline, plus the classification
rules that map arbitrary exceptions (storage, sqlite, httpx, timeouts) onto
them so the sync engine can tell retryable failures from fatal ones.
"""

import asyncio
import errno
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Type

import httpx

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Categories of errors for appropriate handling strategies."""
    VALIDATION = "validation"
    OFFLINE = "offline"
    NETWORK = "network"
    STORAGE_QUOTA = "storage_quota"
    PERMISSION = "permission"
    SAVE = "save"
    CONTRACT = "contract"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the next attempt, ``base * multiplier**attempt`` capped."""
        delay = self.base_delay * (self.backoff_multiplier ** max(0, attempt))
        return min(delay, self.max_delay)


class CaptureError(Exception):
    """Base class for capture/save failures carrying user-facing text."""

    code = "capture_error"
    category = ErrorCategory.SAVE
    retryable = True
    user_message = "Something went wrong while saving your memory."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class OfflineError(CaptureError):
    """No connectivity. The capture is queued and retried later."""
    code = "offline"
    category = ErrorCategory.OFFLINE
    user_message = "You're offline. Your memory will sync when you're back online."


class NetworkError(CaptureError):
    code = "network"
    category = ErrorCategory.NETWORK
    user_message = "Network error. Check your connection and try again."


class StorageQuotaError(CaptureError):
    code = "storage_quota"
    category = ErrorCategory.STORAGE_QUOTA
    retryable = False
    user_message = "Storage limit reached. Please delete some memories."


class PermissionDeniedError(CaptureError):
    code = "permission"
    category = ErrorCategory.PERMISSION
    retryable = False
    user_message = "Permission denied. Please check app settings."


class SaveError(CaptureError):
    code = "save"
    category = ErrorCategory.SAVE
    user_message = "Failed to save memory."


class DuplicateLocalIdError(CaptureError):
    """A queued memory with this local id already exists."""
    code = "duplicate_local_id"
    category = ErrorCategory.CONTRACT
    retryable = False

    def __init__(self, local_id: str):
        super().__init__(f"Queued memory already exists: {local_id}")
        self.local_id = local_id


class MediaCapacityError(CaptureError):
    code = "media_capacity"
    category = ErrorCategory.VALIDATION
    retryable = False

    def __init__(self, kind: str, limit: int):
        super().__init__(f"You can attach at most {limit} {kind}s")
        self.kind = kind
        self.limit = limit


class DraftValidationError(CaptureError):
    code = "validation"
    category = ErrorCategory.VALIDATION
    retryable = False
    user_message = "Add some text, a photo, or a video before saving."


ERRORS_BY_CODE: Dict[str, Type[CaptureError]] = {
    cls.code: cls
    for cls in (OfflineError, NetworkError, StorageQuotaError, PermissionDeniedError, SaveError)
}

FATAL_ERROR_CODES = frozenset(code for code, cls in ERRORS_BY_CODE.items() if not cls.retryable)


@dataclass
class ErrorPattern:
    pattern: str
    error_class: Type[CaptureError]


# Message patterns, checked in order after the type-based rules
DEFAULT_PATTERNS: List[ErrorPattern] = [
    ErrorPattern(r"\b413\b|quota|storage.*limit|disk.*full|no space left", StorageQuotaError),
    ErrorPattern(r"\b403\b|permission|forbidden|access.*denied", PermissionDeniedError),
    ErrorPattern(r"timeout|timed out|connection|network|dns.*resolution|unreachable", NetworkError),
    # transient lock contention on the backing store
    ErrorPattern(r"database.*locked", NetworkError),
]

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def classify_save_error(error: BaseException) -> CaptureError:
    """Map an arbitrary exception onto the capture error taxonomy."""
    if isinstance(error, CaptureError):
        return error

    message = str(error) or type(error).__name__

    if isinstance(error, OSError) and error.errno in _QUOTA_ERRNOS:
        return StorageQuotaError(f"{StorageQuotaError.user_message} ({message})")
    if isinstance(error, PermissionError):
        return PermissionDeniedError(f"{PermissionDeniedError.user_message} ({message})")
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
        return NetworkError(f"{NetworkError.user_message} ({message})")
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 413:
            return StorageQuotaError(f"{StorageQuotaError.user_message} ({message})")
        if status in (401, 403):
            return PermissionDeniedError(f"{PermissionDeniedError.user_message} ({message})")
        if status >= 500:
            return NetworkError(f"{NetworkError.user_message} ({message})")

    searchable = f"{type(error).__name__} {message}"
    for rule in DEFAULT_PATTERNS:
        if re.search(rule.pattern, searchable, re.IGNORECASE):
            return rule.error_class(f"{rule.error_class.user_message} ({message})")

    logger.debug("Unclassified save error %s: %s", type(error).__name__, message)
    return SaveError(f"Failed to save memory: {message}")


def is_fatal_code(code: Optional[str]) -> bool:
    return code in FATAL_ERROR_CODES
