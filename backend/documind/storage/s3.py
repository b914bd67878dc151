"""
S3 Storage Backend

Objects are addressed by the full key stored on the document row
(documents.storage_path). Credentials come from the ambient AWS chain:
ECS task role / IRSA in production, AWS_ACCESS_KEY_ID /
AWS_SECRET_ACCESS_KEY (or LocalStack via S3_ENDPOINT_URL) in local dev.
"""

from __future__ import annotations

import logging
from typing import Optional

import aioboto3
from botocore.exceptions import ClientError

from documind.storage.base import StorageBackend

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class S3Storage(StorageBackend):
    """Async S3 reads for a single bucket."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
    ) -> None:
        self._bucket       = bucket
        self._region       = region
        self._endpoint_url = endpoint_url
        self._session      = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
        )

    async def download_file(self, path: str) -> Optional[bytes]:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in _MISSING_CODES:
                    logger.warning("S3 object missing | bucket=%s key=%s", self._bucket, path)
                    return None
                raise

        logger.info("S3 download ok | bucket=%s key=%s size=%d", self._bucket, path, len(data))
        return data
