"""
Queue Operations API Router

  GET  /api/v1/queues/stats                         waiting/active/completed/failed/delayed per queue
  POST /api/v1/orgs/{org_id}/batch-operations       reindex_all | extract_entities_all | cleanup
"""

from __future__ import annotations

import uuid
from dataclasses import asdict

from fastapi import APIRouter, status

from documind.api.dependencies import AppQueue
from documind.schemas.documents import ErrorResponse
from documind.schemas.search import BatchJobResponse, BatchOperationRequest, QueueStatsItem
from documind.workers.queue import BatchOperationJob

router = APIRouter(tags=["Queues"])


@router.get(
    "/queues/stats",
    response_model=dict[str, QueueStatsItem],
    responses={412: {"model": ErrorResponse, "description": "Job queue not configured"}},
    summary="Job counts per queue and state",
)
async def queue_stats(queue: AppQueue) -> dict[str, QueueStatsItem]:
    stats = await queue.get_all_queue_stats()
    return {name: QueueStatsItem(**asdict(s)) for name, s in stats.items()}


@router.post(
    "/orgs/{org_id}/batch-operations",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=BatchJobResponse,
    responses={412: {"model": ErrorResponse, "description": "Job queue not configured"}},
    summary="Queue an organization-wide batch operation",
)
async def enqueue_batch_operation(
    org_id: uuid.UUID,
    body: BatchOperationRequest,
    queue: AppQueue,
) -> BatchJobResponse:
    enqueued = await queue.enqueue_batch(BatchOperationJob(
        operation_type=body.operation_type,
        org_id=org_id,
        options=body.options,
    ))
    return BatchJobResponse(job_id=enqueued.job_id, queue=enqueued.queue)
