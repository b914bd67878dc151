"""
Job Handlers
════════════

The async bodies of the Celery tasks. They take their collaborators as
arguments so they can be exercised without a broker.

  handle_document_indexing   Indexer run; a failed result raises JobFailedError
                             so the queue's retry policy applies. On success,
                             chains an entity-extraction job for the new chunks.
  handle_entity_extraction   loads the job's chunks (scoped to the org) and
                             runs the knowledge-graph builder over them
  handle_batch_operation     reindex_all | extract_entities_all | cleanup

WorkerContext builds the per-task resources. Celery runs each task in a fresh
event loop, so the database engine uses NullPool and nothing is cached
between tasks.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from documind.core.config import Settings
from documind.core.exceptions import JobFailedError, ValidationError
from documind.db.session import Database, UnitOfWorkFactory
from documind.entities.resolver import KnowledgeGraphBuilder
from documind.services.container import Services, build_services
from documind.services.indexer import DocumentIndexer
from documind.workers.queue import (
    BatchOperation,
    BatchOperationJob,
    DocumentIndexingJob,
    EntityExtractionJob,
    JobQueue,
)

logger = logging.getLogger(__name__)

REINDEX_BATCH_SIZE = 5


# ---------------------------------------------------------------------------
# Document indexing
# ---------------------------------------------------------------------------

async def handle_document_indexing(
    job: DocumentIndexingJob,
    *,
    indexer: DocumentIndexer,
    queue: Optional[JobQueue] = None,
) -> dict[str, Any]:
    logger.info("Indexing job | doc=%s org=%s priority=%s", job.document_id, job.org_id, job.priority.value)

    result = await indexer.index_document(job.document_id)
    if not result.success:
        raise JobFailedError(result.error or "Indexing failed")

    extraction_job_id = None
    if job.enable_entity_extraction and result.chunk_ids and queue is not None:
        try:
            enqueued = await queue.enqueue_extraction(EntityExtractionJob(
                document_id=job.document_id,
                org_id=job.org_id,
                chunk_ids=result.chunk_ids,
            ))
            extraction_job_id = enqueued.job_id
        except Exception as exc:
            # The document is indexed either way; the graph can be rebuilt later
            logger.warning(
                "Could not enqueue entity extraction | doc=%s error=%s",
                job.document_id, exc,
            )

    return {
        "success":           True,
        "document_id":       str(job.document_id),
        "chunks_created":    result.chunks_created,
        "total_tokens":      result.total_tokens,
        "extraction_job_id": extraction_job_id,
        "timings":           result.timings,
    }


# ---------------------------------------------------------------------------
# Entity extraction
# ---------------------------------------------------------------------------

async def handle_entity_extraction(
    job: EntityExtractionJob,
    *,
    uow_factory: UnitOfWorkFactory,
    builder: KnowledgeGraphBuilder,
) -> dict[str, Any]:
    async with uow_factory() as uow:
        chunks = list(await uow.chunks.get_many(job.chunk_ids, job.org_id))

    if not chunks:
        logger.info("Extraction job has no chunks | doc=%s", job.document_id)
        return {"success": True, "entities_extracted": 0, "relationships_extracted": 0}

    result = await builder.extract_entities_from_chunks(job.org_id, chunks)
    return {
        "success":                 True,
        "chunks_processed":        result.chunks_processed,
        "chunks_failed":           result.chunks_failed,
        "entities_extracted":      result.entities_extracted,
        "relationships_extracted": result.relationships_extracted,
        "tokens_used":             result.tokens_used,
    }


# ---------------------------------------------------------------------------
# Batch operations
# ---------------------------------------------------------------------------

async def handle_batch_operation(
    job: BatchOperationJob,
    *,
    uow_factory: UnitOfWorkFactory,
    indexer: DocumentIndexer,
    builder: KnowledgeGraphBuilder,
) -> dict[str, Any]:
    logger.info("Batch operation | op=%s org=%s", job.operation_type.value, job.org_id)

    if job.operation_type is BatchOperation.REINDEX_ALL:
        return await _reindex_all(job, uow_factory, indexer)
    if job.operation_type is BatchOperation.EXTRACT_ENTITIES_ALL:
        return await _extract_entities_all(job, uow_factory, builder)
    if job.operation_type is BatchOperation.CLEANUP:
        return await _cleanup(job, uow_factory)
    raise ValidationError(f"Unknown operation type: {job.operation_type}")


async def _reindex_all(
    job: BatchOperationJob,
    uow_factory: UnitOfWorkFactory,
    indexer: DocumentIndexer,
) -> dict[str, Any]:
    async with uow_factory() as uow:
        reset = await uow.documents.reset_all_to_pending(job.org_id)
    logger.info("Reset documents to pending | org=%s count=%d", job.org_id, reset)

    processed = failed = 0
    while True:
        results = await indexer.process_pending_documents(limit=REINDEX_BATCH_SIZE, org_id=job.org_id)
        processed += sum(1 for r in results if r.success)
        failed    += sum(1 for r in results if not r.success)
        if len(results) < REINDEX_BATCH_SIZE:
            break

    return {"success": True, "processed": processed, "failed": failed}


async def _extract_entities_all(
    job: BatchOperationJob,
    uow_factory: UnitOfWorkFactory,
    builder: KnowledgeGraphBuilder,
) -> dict[str, Any]:
    async with uow_factory() as uow:
        document_ids = await uow.documents.list_indexed_ids(job.org_id)

    processed = failed = 0
    for document_id in document_ids:
        try:
            async with uow_factory() as uow:
                chunks = list(await uow.chunks.list_for_document(document_id))
            await builder.extract_entities_from_chunks(job.org_id, chunks)
            processed += 1
        except Exception as exc:
            failed += 1
            logger.error(
                "Entity extraction failed for document | doc=%s error=%s",
                document_id, exc,
                exc_info=True,
            )

    return {"success": True, "processed": processed, "failed": failed, "total": len(document_ids)}


async def _cleanup(job: BatchOperationJob, uow_factory: UnitOfWorkFactory) -> dict[str, Any]:
    async with uow_factory() as uow:
        chunks_deleted   = await uow.chunks.delete_for_deleted_documents(job.org_id)
        entities_deleted = await uow.graph.delete_orphan_entities(job.org_id)

    logger.info(
        "Cleanup | org=%s chunks_deleted=%d entities_deleted=%d",
        job.org_id, chunks_deleted, entities_deleted,
    )
    return {
        "success":   True,
        "processed": chunks_deleted + entities_deleted,
        "failed":    0,
    }


# ---------------------------------------------------------------------------
# Per-task resources
# ---------------------------------------------------------------------------

class WorkerContext:
    """
    Usage:
        async with WorkerContext(settings, celery_app) as ctx:
            await handle_document_indexing(job, indexer=ctx.services.indexer, queue=ctx.queue)
    """

    def __init__(self, settings: Settings, celery) -> None:
        self._settings = settings
        self._celery   = celery
        self.database: Database | None = None
        self.services: Services | None = None
        self.queue:    JobQueue | None = None

    async def __aenter__(self) -> "WorkerContext":
        try:
            self.database = Database(self._settings, use_null_pool=True)
            self.database.open()
            self.services = build_services(self._settings, self.database)
            self.queue    = JobQueue.from_settings(self._settings, self._celery)
            await self.queue.open()
        except Exception:
            await self.__aexit__(None, None, None)
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.queue is not None:
            await self.queue.close()
        if self.services is not None:
            await self.services.aclose()
        if self.database is not None:
            await self.database.close()
