"""
Storage Factory

Selects the storage backend (S3 | local) from settings. The rest of the
app only sees StorageBackend.
"""

from __future__ import annotations

from documind.core.config import Settings
from documind.storage.base import StorageBackend


def create_storage(settings: Settings) -> StorageBackend:
    backend = settings.storage_backend.lower()

    if backend == "s3":
        from documind.storage.s3 import S3Storage
        return S3Storage(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url or None,
        )

    if backend == "local":
        from documind.storage.local import LocalStorage
        return LocalStorage(settings.local_storage_root)

    raise ValueError(
        f"Unknown storage backend: '{backend}'. "
        f"Valid options: 's3', 'local'"
    )
