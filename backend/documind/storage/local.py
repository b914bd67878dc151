"""Filesystem storage backend for local development and tests."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from documind.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class LocalStorage(StorageBackend):
    """Objects are files under `root`; keys are relative paths."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self._root / path.lstrip("/")).resolve()
        # Reject keys that escape the root (../../etc/passwd)
        if self._root not in candidate.parents and candidate != self._root:
            raise ValueError(f"Storage path escapes root: {path!r}")
        return candidate

    async def download_file(self, path: str) -> Optional[bytes]:
        target = self._resolve(path)
        if not target.is_file():
            logger.warning("Local object missing | path=%s", target)
            return None
        return await asyncio.to_thread(target.read_bytes)
