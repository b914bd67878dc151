"""
Document Indexing API Router

  POST /api/v1/orgs/{org_id}/documents/{document_id}/index     enqueue (202)
  POST /api/v1/orgs/{org_id}/documents/{document_id}/reindex   synchronous
  GET  /api/v1/orgs/{org_id}/documents/stats

Enqueue is idempotent per document: while a job for the document is
outstanding a second call returns the same job id with created=false.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, status

from documind.api.dependencies import AppQueue, AppServices, OrgDocument
from documind.schemas.documents import (
    ErrorResponse,
    IndexDocumentRequest,
    IndexingResultResponse,
    IndexingStatsResponse,
    IndexingTimings,
    IndexJobResponse,
)
from documind.workers.queue import DocumentIndexingJob

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orgs/{org_id}/documents",
    tags=["Document Indexing"],
)


@router.post(
    "/{document_id}/index",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=IndexJobResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Document not found"},
        412: {"model": ErrorResponse, "description": "Job queue not configured"},
    },
    summary="Queue a document for indexing",
)
async def enqueue_indexing(
    org_id: uuid.UUID,
    document: OrgDocument,
    queue: AppQueue,
    body: IndexDocumentRequest | None = None,
) -> IndexJobResponse:
    body = body or IndexDocumentRequest()
    enqueued = await queue.enqueue_indexing(DocumentIndexingJob(
        document_id=document.id,
        org_id=org_id,
        priority=body.priority,
        enable_entity_extraction=body.enable_entity_extraction,
    ))
    return IndexJobResponse(
        job_id=enqueued.job_id,
        queue=enqueued.queue,
        created=enqueued.created,
        document_id=document.id,
    )


@router.post(
    "/{document_id}/reindex",
    response_model=IndexingResultResponse,
    responses={404: {"model": ErrorResponse, "description": "Document not found"}},
    summary="Reset and re-index a document synchronously",
)
async def reindex_document(
    org_id: uuid.UUID,
    document: OrgDocument,
    services: AppServices,
) -> IndexingResultResponse:
    result = await services.indexer.reindex_document(document.id)
    logger.info(
        "Reindex via API | org=%s doc=%s success=%s",
        org_id, document.id, result.success,
    )
    return IndexingResultResponse(
        document_id=result.document_id,
        success=result.success,
        chunks_created=result.chunks_created,
        total_tokens=result.total_tokens,
        page_count=result.page_count,
        error=result.error,
        timings=IndexingTimings(**result.timings),
    )


@router.get(
    "/stats",
    response_model=IndexingStatsResponse,
    summary="Index status counts for the organization",
)
async def indexing_stats(org_id: uuid.UUID, services: AppServices) -> IndexingStatsResponse:
    stats = await services.indexer.get_indexing_stats(org_id)
    return IndexingStatsResponse(**vars(stats))
