"""
Celery Tasks — Background Pipeline

Task: index_document         (queue: document-indexing)
Task: extract_entities       (queue: entity-extraction)
Task: run_batch_operation    (queue: batch-operations)

Every task follows the same envelope:
  1. Build a WorkerContext (database, providers, job queue) in a fresh loop
  2. Report the job active in the Redis job-state store
  3. Run the handler
  4. Success  → completed (dedup key released, retention trimmed)
     Failure  → delayed + task.retry(countdown=backoff × 2ⁿ) while attempts
                remain, otherwise failed (dedup key released)

Payloads carry ids only; the handler reloads everything from the database.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Awaitable, Callable

from celery import Task

from documind.core.config import get_settings
from documind.workers.celery_app import (
    BATCH_OPERATION_TASK,
    BATCH_OPERATIONS,
    DOCUMENT_INDEXING,
    ENTITY_EXTRACTION,
    EXTRACT_ENTITIES_TASK,
    INDEX_DOCUMENT_TASK,
    celery_app,
)
from documind.workers.handlers import (
    WorkerContext,
    handle_batch_operation,
    handle_document_indexing,
    handle_entity_extraction,
)
from documind.workers.queue import (
    POLICIES,
    BatchOperationJob,
    DocumentIndexingJob,
    EntityExtractionJob,
    JobQueue,
)

logger = logging.getLogger(__name__)

Handler = Callable[[WorkerContext], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


async def _record(action: Awaitable[None], job_id: str) -> None:
    """Job-state bookkeeping never decides the outcome of the job itself."""
    try:
        await action
    except Exception as exc:
        logger.warning("Job state update failed | job_id=%s error=%s", job_id, exc)


async def _execute(task: Task, queue_name: str, job_id: str, handler: Handler) -> dict[str, Any]:
    policy  = POLICIES[queue_name]
    attempt = task.request.retries + 1

    async with WorkerContext(get_settings(), celery_app) as ctx:
        queue: JobQueue = ctx.queue
        await _record(queue.mark_active(queue_name, job_id, attempt), job_id)

        try:
            result = await handler(ctx)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            if attempt < policy.attempts:
                countdown = policy.retry_countdown(task.request.retries)
                await _record(queue.mark_delayed(queue_name, job_id, error, countdown), job_id)
                raise task.retry(exc=exc, countdown=countdown)

            logger.error(
                "Job failed after %d attempts | queue=%s job_id=%s error=%s",
                attempt, queue_name, job_id, error,
            )
            await _record(queue.mark_failed(queue_name, job_id, error), job_id)
            raise

        await _record(queue.mark_completed(queue_name, job_id, result), job_id)
        return result


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name=INDEX_DOCUMENT_TASK,
    bind=True,
    max_retries=POLICIES[DOCUMENT_INDEXING].attempts - 1,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def index_document(
    self: Task,
    *,
    job_id:      str,
    document_id: str,
    org_id:      str,
    priority:    str = "normal",
    enable_entity_extraction: bool = True,
) -> dict[str, Any]:
    job = DocumentIndexingJob.from_payload({
        "document_id":              document_id,
        "org_id":                   org_id,
        "priority":                 priority,
        "enable_entity_extraction": enable_entity_extraction,
    })
    return run_async(_execute(
        self, DOCUMENT_INDEXING, job_id,
        lambda ctx: handle_document_indexing(job, indexer=ctx.services.indexer, queue=ctx.queue),
    ))


@celery_app.task(
    name=EXTRACT_ENTITIES_TASK,
    bind=True,
    max_retries=POLICIES[ENTITY_EXTRACTION].attempts - 1,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=540,
    time_limit=600,
)
def extract_entities(
    self: Task,
    *,
    job_id:      str,
    document_id: str,
    org_id:      str,
    chunk_ids:   list[str],
) -> dict[str, Any]:
    job = EntityExtractionJob.from_payload({
        "document_id": document_id,
        "org_id":      org_id,
        "chunk_ids":   chunk_ids,
    })
    return run_async(_execute(
        self, ENTITY_EXTRACTION, job_id,
        lambda ctx: handle_entity_extraction(
            job,
            uow_factory=ctx.database.unit_of_work,
            builder=ctx.services.graph_builder,
        ),
    ))


@celery_app.task(
    name=BATCH_OPERATION_TASK,
    bind=True,
    max_retries=POLICIES[BATCH_OPERATIONS].attempts - 1,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=3300,
    time_limit=3600,
)
def run_batch_operation(
    self: Task,
    *,
    job_id:         str,
    operation_type: str,
    org_id:         str,
    options:        dict[str, Any] | None = None,
) -> dict[str, Any]:
    job = BatchOperationJob.from_payload({
        "operation_type": operation_type,
        "org_id":         org_id,
        "options":        options or {},
    })
    return run_async(_execute(
        self, BATCH_OPERATIONS, job_id,
        lambda ctx: handle_batch_operation(
            job,
            uow_factory=ctx.database.unit_of_work,
            indexer=ctx.services.indexer,
            builder=ctx.services.graph_builder,
        ),
    ))
