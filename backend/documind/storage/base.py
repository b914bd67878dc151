"""
Storage Backend — Abstract Base

The indexer only needs to read bytes back by the key recorded on the
document row. Upload and URL issuance live outside this service.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class StorageBackend(ABC):

    @abstractmethod
    async def download_file(self, path: str) -> Optional[bytes]:
        """
        Return the object's bytes, or None when no object exists at `path`.
        Any other failure (credentials, network) raises.
        """

    async def close(self) -> None:
        """Release client resources; no-op by default."""
