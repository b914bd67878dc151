"""
Document Indexer — Orchestrator
════════════════════════════════

Drives one document through the indexing pipeline:

  1. Load document row              → NotFoundError / NoStoragePathError
  2. index_status → processing      (own transaction, visible immediately)
  3. Download bytes from storage    → StorageError
  4. Extract text (pypdf / docx)    → EmptyExtractionError if blank
  5. Chunk (page by page for multi-page PDFs) + merge small chunks
                                    → NoChunksGeneratedError if none remain
  6. Embed, 20 texts per batch, sequential with a short delay
  7. ONE transaction:
       delete all chunks of the document, bulk-insert the new ones,
       index_status → indexed with chunk/token metadata

  Because step 7 is a single transaction, a crash between the delete and
  the insert rolls both back: the previous chunk set and status survive
  and the job can simply be retried.

Failure policy:
  Every exception is caught at the top of index_document(), written onto
  the document row (index_status=failed, index_error=<message>) and
  returned as IndexingResult(success=False, error=<message>). Nothing
  propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from documind.core.exceptions import (
    DocumindError,
    EmptyExtractionError,
    NoChunksGeneratedError,
    NoStoragePathError,
    NotFoundError,
    StorageError,
)
from documind.db.session import UnitOfWorkFactory
from documind.models.documents import IndexStatus
from documind.processing.chunking import (
    ChunkOptions,
    TextChunk,
    chunk_by_pages,
    chunk_text,
    merge_small_chunks,
)
from documind.processing.embeddings import EmbeddingGenerator
from documind.processing.extractor import ExtractedText, extract_text
from documind.repositories.chunks import ChunkWrite
from documind.storage.base import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_PENDING_BATCH = 10


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class IndexingResult:
    """
    Outcome of one index_document() call. `error` is set iff success is False.
    Timings are wall-clock milliseconds.
    """
    document_id:    uuid.UUID
    success:        bool
    chunks_created: int = 0
    total_tokens:   int = 0
    chunk_ids:      list[uuid.UUID] = field(default_factory=list)
    org_id:         Optional[uuid.UUID] = None
    page_count:     Optional[int] = None
    error:          Optional[str] = None
    extraction_ms:  float = 0.0
    embedding_ms:   float = 0.0
    total_ms:       float = 0.0

    @property
    def timings(self) -> dict[str, float]:
        return {
            "extraction_ms": self.extraction_ms,
            "embedding_ms":  self.embedding_ms,
            "total_ms":      self.total_ms,
        }


@dataclass
class IndexingStats:
    total_documents:      int
    indexed:              int
    pending:              int
    processing:           int
    failed:               int
    total_chunks:         int
    embedding_configured: bool


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

class DocumentIndexer:
    """
    Usage:
        indexer = DocumentIndexer(database.unit_of_work, storage, embeddings)
        result  = await indexer.index_document(document_id)
    """

    def __init__(
        self,
        uow_factory:    UnitOfWorkFactory,
        storage:        StorageBackend,
        embeddings:     EmbeddingGenerator,
        chunk_options:  ChunkOptions | None = None,
        text_extractor: Callable[[bytes, str], ExtractedText] = extract_text,
    ) -> None:
        self._uow_factory    = uow_factory
        self._storage        = storage
        self._embeddings     = embeddings
        self._chunk_options  = chunk_options or ChunkOptions()
        self._text_extractor = text_extractor

    # ------------------------------------------------------------------
    # Single document
    # ------------------------------------------------------------------

    async def index_document(
        self,
        document_id: uuid.UUID,
        options: ChunkOptions | None = None,
    ) -> IndexingResult:
        opts = options or self._chunk_options
        t0 = time.monotonic()
        result = IndexingResult(document_id=document_id, success=False)

        try:
            opts.validate()

            # --- Phase 1: Load document record and set status → processing
            async with self._uow_factory() as uow:
                doc = await uow.documents.get(document_id)
                if doc is None:
                    raise NotFoundError("Document not found")
                if not doc.storage_path:
                    raise NoStoragePathError()

                result.org_id = doc.org_id
                storage_path  = doc.storage_path
                file_type     = doc.file_type
                await uow.documents.mark_processing(document_id)

            logger.info("Indexing | doc=%s org=%s type=%s", document_id, result.org_id, file_type)

            # --- Phase 2: Download + extract ---------------------------
            t_extract = time.monotonic()
            data = await self._download(storage_path)
            extracted = await asyncio.to_thread(self._text_extractor, data, file_type)
            result.extraction_ms = (time.monotonic() - t_extract) * 1000

            if not extracted.text or not extracted.text.strip():
                raise EmptyExtractionError()
            result.page_count = extracted.page_count

            # --- Phase 3: Chunk -----------------------------------------
            chunks = self._chunk(extracted, opts)
            if not chunks:
                raise NoChunksGeneratedError()
            logger.info("Chunked | doc=%s chunks=%d", document_id, len(chunks))

            # --- Phase 4: Embed -----------------------------------------
            t_embed = time.monotonic()
            embedded = await self._embeddings.generate([c.content for c in chunks])
            result.embedding_ms = (time.monotonic() - t_embed) * 1000

            writes = [
                ChunkWrite(
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    token_count=chunk.token_count,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    page_number=chunk.page_number,
                    embedding=vector,
                    metadata=chunk.metadata,
                )
                for chunk, vector in zip(chunks, embedded.vectors)
            ]

            # --- Phase 5: Replace chunks + mark indexed (one transaction)
            async with self._uow_factory() as uow:
                chunk_ids = await uow.chunks.replace_for_document(document_id, result.org_id, writes)
                await uow.documents.mark_indexed(
                    document_id,
                    page_count=extracted.page_count,
                    metadata={
                        "chunks_count": len(chunk_ids),
                        "total_tokens": embedded.total_tokens,
                        "extracted_at": datetime.now(timezone.utc).isoformat(),
                    },
                )

        except Exception as exc:
            message = exc.message if isinstance(exc, DocumindError) else str(exc) or type(exc).__name__
            result.error    = message
            result.total_ms = (time.monotonic() - t0) * 1000

            if isinstance(exc, NotFoundError):
                logger.warning("Indexing skipped, document not found | doc=%s", document_id)
            else:
                logger.error(
                    "Indexing failed | doc=%s error=%s", document_id, message,
                    exc_info=not isinstance(exc, DocumindError),
                )
                await self._mark_failed(document_id, message)
            return result

        result.success        = True
        result.chunk_ids      = chunk_ids
        result.chunks_created = len(chunk_ids)
        result.total_tokens   = embedded.total_tokens
        result.total_ms       = (time.monotonic() - t0) * 1000

        logger.info(
            "Indexing complete | doc=%s chunks=%d tokens=%d extraction_ms=%.0f embedding_ms=%.0f total_ms=%.0f",
            document_id, result.chunks_created, result.total_tokens,
            result.extraction_ms, result.embedding_ms, result.total_ms,
        )
        return result

    async def reindex_document(
        self,
        document_id: uuid.UUID,
        options: ChunkOptions | None = None,
    ) -> IndexingResult:
        """Reset to pending (clearing error / indexed_at), then index."""
        try:
            async with self._uow_factory() as uow:
                if await uow.documents.get(document_id) is None:
                    return IndexingResult(document_id=document_id, success=False, error="Document not found")
                await uow.documents.reset_to_pending(document_id)
        except Exception as exc:
            logger.error("Reindex reset failed | doc=%s error=%s", document_id, exc, exc_info=True)
            return IndexingResult(document_id=document_id, success=False, error=str(exc))

        logger.info("Reindex requested | doc=%s", document_id)
        return await self.index_document(document_id, options)

    # ------------------------------------------------------------------
    # Batch driver
    # ------------------------------------------------------------------

    async def process_pending_documents(
        self,
        limit: int = DEFAULT_PENDING_BATCH,
        org_id: uuid.UUID | None = None,
    ) -> list[IndexingResult]:
        """
        Index up to `limit` pending documents, oldest first, one at a time.
        One failing document never stops the rest.
        """
        async with self._uow_factory() as uow:
            if org_id is None:
                pending_ids = [doc.id for doc in await uow.documents.list_pending(limit)]
            else:
                pending_ids = await uow.documents.list_pending_ids(org_id, limit)

        results: list[IndexingResult] = []
        for document_id in pending_ids:
            results.append(await self.index_document(document_id))

        if pending_ids:
            logger.info(
                "Pending batch | processed=%d succeeded=%d",
                len(results), sum(1 for r in results if r.success),
            )
        return results

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_indexing_stats(self, org_id: uuid.UUID) -> IndexingStats:
        async with self._uow_factory() as uow:
            counts = await uow.documents.count_by_status(org_id)

        # Counted in its own transaction so a failure can't poison the one above
        try:
            async with self._uow_factory() as uow:
                total_chunks = await uow.chunks.count(org_id)
        except Exception as exc:
            logger.warning("Chunk count unavailable | org=%s error=%s", org_id, exc)
            total_chunks = 0

        return IndexingStats(
            total_documents=sum(counts.values()),
            indexed=counts.get(IndexStatus.INDEXED.value, 0),
            pending=counts.get(IndexStatus.PENDING.value, 0),
            processing=counts.get(IndexStatus.PROCESSING.value, 0),
            failed=counts.get(IndexStatus.FAILED.value, 0),
            total_chunks=total_chunks,
            embedding_configured=self._embeddings.is_configured,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _download(self, storage_path: str) -> bytes:
        try:
            data = await self._storage.download_file(storage_path)
        except Exception as exc:
            logger.error("Storage download error | path=%s error=%s", storage_path, exc)
            raise StorageError("Failed to download file from storage", original_error=exc) from exc
        if data is None:
            raise StorageError("Failed to download file from storage")
        return data

    @staticmethod
    def _chunk(extracted: ExtractedText, opts: ChunkOptions) -> list[TextChunk]:
        if len(extracted.pages) > 1:
            chunks = chunk_by_pages(extracted.pages, opts)
        else:
            chunks = chunk_text(extracted.text, opts)
        return merge_small_chunks(chunks, opts.min_chunk_size)

    async def _mark_failed(self, document_id: uuid.UUID, message: str) -> None:
        try:
            async with self._uow_factory() as uow:
                await uow.documents.mark_failed(document_id, message)
        except Exception as exc:
            logger.error(
                "Could not record failure on document | doc=%s error=%s",
                document_id, exc,
                exc_info=True,
            )
