"""Object storage for captured media.

``MediaStorage`` is the bucket/path interface the save operation talks to;
``LocalMediaStorage`` keeps buckets as directories under ``settings.media_dir``
and serves them from ``settings.media_base_url``.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)


class MediaStorage(ABC):
    @abstractmethod
    async def upload(self, bucket: str, storage_path: str, source: Path) -> None:
        """Store ``source`` at ``bucket/storage_path``, overwriting any existing object."""

    @abstractmethod
    def public_url(self, bucket: str, storage_path: str) -> str:
        ...


class LocalMediaStorage(MediaStorage):
    """Filesystem-backed buckets."""

    def __init__(self, root: Optional[Path] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.media_dir)
        self.base_url = (base_url or settings.media_base_url).rstrip("/")

    def _target(self, bucket: str, storage_path: str) -> Path:
        target = (self.root / bucket / storage_path).resolve()
        bucket_root = (self.root / bucket).resolve()
        if bucket_root not in target.parents:
            raise PermissionError(f"Storage path escapes bucket: {storage_path}")
        return target

    def _copy(self, source: Path, target: Path) -> None:
        size = source.stat().st_size
        if size > settings.max_file_size:
            raise OSError(f"File too large for storage quota: {source.name} ({size} bytes)")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        shutil.copyfile(source, tmp)
        tmp.replace(target)

    async def upload(self, bucket: str, storage_path: str, source: Path) -> None:
        target = self._target(bucket, storage_path)
        await asyncio.to_thread(self._copy, Path(source), target)
        logger.debug("Stored %s at %s/%s", source, bucket, storage_path)

    def public_url(self, bucket: str, storage_path: str) -> str:
        return f"{self.base_url}/{bucket}/{storage_path}"

    def exists(self, bucket: str, storage_path: str) -> bool:
        return self._target(bucket, storage_path).exists()


def storage_path_for(user_id: str, local_id: str, kind: str, index: int, source: Path) -> str:
    """Deterministic object path so a retried upload overwrites its earlier copy."""
    suffix = Path(source).suffix.lower()
    return f"{user_id}/{local_id}/{kind}_{index}{suffix}"
