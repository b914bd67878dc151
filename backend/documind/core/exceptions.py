"""
Error taxonomy shared by the indexing, extraction, search and queue layers.

The message of each error is user-visible: the Indexer copies it onto the
document row when a run fails, and the HTTP layer returns it in the body.
"""

from __future__ import annotations

from typing import Optional


class DocumindError(Exception):
    """Base class for every error raised by the core."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class NotFoundError(DocumindError):
    """A referenced row does not exist (or is soft-deleted)."""

    status_code = 404
    error_code = "NOT_FOUND"


class PreconditionFailedError(DocumindError):
    """The target exists but is missing something the operation needs."""

    status_code = 412
    error_code = "PRECONDITION_FAILED"


class NoStoragePathError(PreconditionFailedError):
    def __init__(self, message: str = "Document has no storage path") -> None:
        super().__init__(message)


class QueueNotConfiguredError(PreconditionFailedError):
    def __init__(self, message: str = "Job queue is not configured (REDIS_URL missing)") -> None:
        super().__init__(message)


class EmptyExtractionError(DocumindError):
    status_code = 422
    error_code = "EMPTY_EXTRACTION"

    def __init__(self, message: str = "No text content extracted from document") -> None:
        super().__init__(message)


class NoChunksGeneratedError(DocumindError):
    status_code = 422
    error_code = "NO_CHUNKS_GENERATED"

    def __init__(self, message: str = "No chunks generated from document") -> None:
        super().__init__(message)


class ProviderError(DocumindError):
    """An embedding or LLM provider call failed."""

    status_code = 502
    error_code = "PROVIDER_ERROR"


class StorageError(ProviderError):
    error_code = "STORAGE_ERROR"


class ValidationError(DocumindError):
    """Malformed caller input."""

    status_code = 422
    error_code = "VALIDATION_ERROR"


class JobFailedError(DocumindError):
    """A background job handler reported failure; raised so the retry policy applies."""

    error_code = "JOB_FAILED"
