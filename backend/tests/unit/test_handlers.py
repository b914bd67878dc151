"""
Unit Tests — Job handlers & the Celery task envelope
═════════════════════════════════════════════════════
Handlers run against the in-memory unit of work; the task envelope runs
with WorkerContext patched to hand out the fakeredis-backed JobQueue.

Coverage targets:
  ✅ Indexing job success → result dict, extraction job chained with chunk ids
  ✅ Extraction disabled / no queue → nothing chained
  ✅ Extraction enqueue failure → indexing job still succeeds
  ✅ Indexing failure → JobFailedError (so the retry policy applies)
  ✅ Extraction job: org-scoped chunk load, empty → zero counts
  ✅ Batch reindex_all: resets + reindexes every org document in batches
  ✅ Batch extract_entities_all: per-document failures are counted
  ✅ Batch cleanup: chunks of deleted documents + orphan entities removed
  ✅ Envelope: completed on success; delayed + retry while attempts remain;
     failed + re-raise on the last attempt; bookkeeping errors never fatal
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from celery.exceptions import Retry

from documind.core.config import ExtractionConfig, Provider
from documind.core.exceptions import JobFailedError
from documind.entities.extractor import EntityExtractor
from documind.entities.resolver import KnowledgeGraphBuilder
from documind.models.documents import IndexStatus
from documind.models.entities import Entity
from documind.workers import tasks
from documind.workers.celery_app import DOCUMENT_INDEXING, ENTITY_EXTRACTION
from documind.workers.handlers import (
    REINDEX_BATCH_SIZE,
    handle_batch_operation,
    handle_document_indexing,
    handle_entity_extraction,
)
from documind.workers.queue import (
    BatchOperation,
    BatchOperationJob,
    DocumentIndexingJob,
    EntityExtractionJob,
)


TEXT = "Jane Doe joined Acme Corp in Berlin. " * 40


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _add_text_document(store, storage, org_id, text: str = TEXT, **kwargs):
    kwargs.setdefault("storage_path", f"orgs/{org_id}/{uuid.uuid4()}.txt")
    doc = store.add_document(org_id, **kwargs)
    storage.objects[doc.storage_path] = text.encode("utf-8")
    return doc


@pytest.fixture
def builder(uow_factory) -> KnowledgeGraphBuilder:
    return KnowledgeGraphBuilder(uow_factory, EntityExtractor(ExtractionConfig(provider=Provider.MOCK)))


def _task(retries: int = 0) -> MagicMock:
    task = MagicMock()
    task.request = SimpleNamespace(retries=retries)
    task.retry = MagicMock(side_effect=lambda exc, countdown: Retry(str(exc), when=countdown))
    return task


def _patched_context(job_queue):
    @asynccontextmanager
    async def context(_settings, _celery):
        yield SimpleNamespace(queue=job_queue, services=None, database=None)

    return patch.object(tasks, "WorkerContext", context)


# ─────────────────────────────────────────────────────────────────────────────
# Document indexing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestHandleDocumentIndexing:

    async def test_success_chains_extraction(self, indexer, job_queue, mock_celery, store, storage, org_id):
        doc = _add_text_document(store, storage, org_id)
        job = DocumentIndexingJob(document_id=doc.id, org_id=org_id)

        result = await handle_document_indexing(job, indexer=indexer, queue=job_queue)

        assert result["success"] is True
        assert result["chunks_created"] == len(store.chunks_of(doc.id))
        assert result["extraction_job_id"] == f"entity-extract-{doc.id}"

        sent = mock_celery.send_task.call_args.kwargs
        assert sent["queue"] == ENTITY_EXTRACTION
        assert sent["kwargs"]["chunk_ids"] == [str(c.id) for c in store.chunks_of(doc.id)]

    async def test_extraction_disabled(self, indexer, job_queue, mock_celery, store, storage, org_id):
        doc = _add_text_document(store, storage, org_id)
        job = DocumentIndexingJob(document_id=doc.id, org_id=org_id, enable_entity_extraction=False)

        result = await handle_document_indexing(job, indexer=indexer, queue=job_queue)

        assert result["extraction_job_id"] is None
        mock_celery.send_task.assert_not_called()

    async def test_without_queue(self, indexer, store, storage, org_id):
        doc = _add_text_document(store, storage, org_id)

        result = await handle_document_indexing(DocumentIndexingJob(doc.id, org_id), indexer=indexer)

        assert result["success"] is True
        assert result["extraction_job_id"] is None

    async def test_extraction_enqueue_failure_is_not_fatal(self, indexer, job_queue, store, storage, org_id):
        doc = _add_text_document(store, storage, org_id)

        with patch.object(job_queue, "enqueue_extraction", AsyncMock(side_effect=ConnectionError("redis down"))):
            result = await handle_document_indexing(DocumentIndexingJob(doc.id, org_id), indexer=indexer, queue=job_queue)

        assert result["success"] is True
        assert result["extraction_job_id"] is None
        assert doc.index_status == IndexStatus.INDEXED.value

    async def test_failed_indexing_raises(self, indexer, job_queue, mock_celery, store, storage, org_id):
        doc = _add_text_document(store, storage, org_id, text="  ")

        with pytest.raises(JobFailedError, match="No text content extracted from document"):
            await handle_document_indexing(DocumentIndexingJob(doc.id, org_id), indexer=indexer, queue=job_queue)

        mock_celery.send_task.assert_not_called()


# ─────────────────────────────────────────────────────────────────────────────
# Entity extraction
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestHandleEntityExtraction:

    async def test_extracts_from_job_chunks(self, uow_factory, builder, indexer, store, storage, org_id):
        doc = _add_text_document(store, storage, org_id)
        indexed = await indexer.index_document(doc.id)
        job = EntityExtractionJob(document_id=doc.id, org_id=org_id, chunk_ids=indexed.chunk_ids)

        result = await handle_entity_extraction(job, uow_factory=uow_factory, builder=builder)

        assert result["success"] is True
        assert result["chunks_processed"] == len(indexed.chunk_ids)
        assert result["entities_extracted"] > 0
        assert any(e.name == "Jane Doe" for e in store.entities.values())

    async def test_chunks_of_other_org_are_ignored(self, uow_factory, builder, indexer, store, storage, org_id):
        doc = _add_text_document(store, storage, org_id)
        indexed = await indexer.index_document(doc.id)
        job = EntityExtractionJob(document_id=doc.id, org_id=uuid.uuid4(), chunk_ids=indexed.chunk_ids)

        result = await handle_entity_extraction(job, uow_factory=uow_factory, builder=builder)

        assert result == {"success": True, "entities_extracted": 0, "relationships_extracted": 0}
        assert store.entities == {}


# ─────────────────────────────────────────────────────────────────────────────
# Batch operations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestHandleBatchOperation:

    async def test_reindex_all(self, uow_factory, indexer, builder, store, storage, org_id):
        docs = [_add_text_document(store, storage, org_id) for _ in range(REINDEX_BATCH_SIZE + 2)]
        for doc in docs[:3]:
            await indexer.index_document(doc.id)
        broken = store.add_document(org_id, storage_path="orgs/missing.txt")
        other_org = _add_text_document(store, storage, uuid.uuid4())

        job = BatchOperationJob(operation_type=BatchOperation.REINDEX_ALL, org_id=org_id)
        result = await handle_batch_operation(job, uow_factory=uow_factory, indexer=indexer, builder=builder)

        assert result == {"success": True, "processed": len(docs), "failed": 1}
        assert all(d.index_status == IndexStatus.INDEXED.value for d in docs)
        assert broken.index_status == IndexStatus.FAILED.value
        assert other_org.index_status == IndexStatus.PENDING.value

    async def test_extract_entities_all(self, uow_factory, indexer, builder, store, storage, org_id):
        docs = [_add_text_document(store, storage, org_id) for _ in range(3)]
        for doc in docs:
            await indexer.index_document(doc.id)

        job = BatchOperationJob(operation_type=BatchOperation.EXTRACT_ENTITIES_ALL, org_id=org_id)
        with patch.object(builder, "extract_entities_from_chunks", AsyncMock(side_effect=[None, RuntimeError("x"), None])):
            result = await handle_batch_operation(job, uow_factory=uow_factory, indexer=indexer, builder=builder)

        assert result == {"success": True, "processed": 2, "failed": 1, "total": 3}

    async def test_cleanup(self, uow_factory, indexer, builder, store, storage, org_id):
        live = _add_text_document(store, storage, org_id)
        gone = _add_text_document(store, storage, org_id)
        await indexer.index_document(live.id)
        await indexer.index_document(gone.id)
        gone.deleted_at = store.tick()
        orphan = Entity(
            id=uuid.uuid4(), org_id=org_id, name="Nobody", normalized_name="nobody",
            entity_type="person", aliases=[], confidence=0.5, mention_count=0, document_count=0,
        )
        store.entities[orphan.id] = orphan
        gone_chunks = len(store.chunks_of(gone.id))

        job = BatchOperationJob(operation_type=BatchOperation.CLEANUP, org_id=org_id)
        result = await handle_batch_operation(job, uow_factory=uow_factory, indexer=indexer, builder=builder)

        assert result == {"success": True, "processed": gone_chunks + 1, "failed": 0}
        assert store.chunks_of(gone.id) == []
        assert store.chunks_of(live.id)
        assert orphan.id not in store.entities


# ─────────────────────────────────────────────────────────────────────────────
# Task envelope
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestTaskEnvelope:

    async def test_success_marks_completed(self, job_queue):
        enqueued = await job_queue.enqueue_indexing(DocumentIndexingJob(uuid.uuid4(), uuid.uuid4()))
        handler = AsyncMock(return_value={"success": True})

        with _patched_context(job_queue):
            result = await tasks._execute(_task(), DOCUMENT_INDEXING, enqueued.job_id, handler)

        assert result == {"success": True}
        stored = await job_queue.get_job(DOCUMENT_INDEXING, enqueued.job_id)
        assert stored["state"] == "completed"
        assert stored["attempts"] == 1

    async def test_failure_with_attempts_left_retries(self, job_queue):
        enqueued = await job_queue.enqueue_indexing(DocumentIndexingJob(uuid.uuid4(), uuid.uuid4()))
        handler = AsyncMock(side_effect=JobFailedError("Failed to download file from storage"))
        task = _task(retries=1)

        with _patched_context(job_queue):
            with pytest.raises(Retry):
                await tasks._execute(task, DOCUMENT_INDEXING, enqueued.job_id, handler)

        assert task.retry.call_args.kwargs["countdown"] == 10.0
        stored = await job_queue.get_job(DOCUMENT_INDEXING, enqueued.job_id)
        assert stored["state"] == "delayed"
        assert stored["error"] == "Failed to download file from storage"

    async def test_last_attempt_marks_failed(self, job_queue):
        job = DocumentIndexingJob(uuid.uuid4(), uuid.uuid4())
        enqueued = await job_queue.enqueue_indexing(job)
        handler = AsyncMock(side_effect=JobFailedError("No text content extracted from document"))
        task = _task(retries=2)

        with _patched_context(job_queue):
            with pytest.raises(JobFailedError):
                await tasks._execute(task, DOCUMENT_INDEXING, enqueued.job_id, handler)

        task.retry.assert_not_called()
        stored = await job_queue.get_job(DOCUMENT_INDEXING, enqueued.job_id)
        assert stored["state"] == "failed"
        assert (await job_queue.enqueue_indexing(job)).created is True

    async def test_bookkeeping_errors_are_not_fatal(self, job_queue):
        handler = AsyncMock(return_value={"success": True})

        with _patched_context(job_queue), \
                patch.object(job_queue, "mark_active", AsyncMock(side_effect=ConnectionError("redis gone"))), \
                patch.object(job_queue, "mark_completed", AsyncMock(side_effect=ConnectionError("redis gone"))):
            result = await tasks._execute(_task(), DOCUMENT_INDEXING, "doc-index-x", handler)

        assert result == {"success": True}

    def test_run_async_without_loop(self):
        async def answer():
            return 42

        assert tasks.run_async(answer()) == 42
