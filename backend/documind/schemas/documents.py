"""
Document Indexing — Pydantic Request/Response Schemas

Covers:
  - POST /orgs/{org_id}/documents/{document_id}/index    (202, job handle)
  - POST /orgs/{org_id}/documents/{document_id}/reindex  (200, IndexingResult)
  - GET  /orgs/{org_id}/documents/stats
  - The uniform error envelope used by every 4xx/5xx response
"""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field

from documind.workers.queue import JobPriority


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------

class IndexDocumentRequest(BaseModel):
    priority: JobPriority = Field(JobPriority.NORMAL, description="high | normal | low")
    enable_entity_extraction: bool = Field(
        True,
        description="Queue knowledge-graph extraction after a successful index",
    )


class IndexJobResponse(BaseModel):
    """202 Accepted body. `created` is False when the document already had an outstanding job."""
    job_id:      str
    queue:       str
    created:     bool
    document_id: UUID


class IndexingTimings(BaseModel):
    extraction_ms: float
    embedding_ms:  float
    total_ms:      float


class IndexingResultResponse(BaseModel):
    document_id:    UUID
    success:        bool
    chunks_created: int
    total_tokens:   int
    page_count:     int | None = None
    error:          str | None = None
    timings:        IndexingTimings


class IndexingStatsResponse(BaseModel):
    total_documents:      int
    indexed:              int
    pending:              int
    processing:           int
    failed:               int
    total_chunks:         int
    embedding_configured: bool


# ---------------------------------------------------------------------------
# Structured error responses
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")
