"""Typed persistence for DocumentChunk rows."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from documind.models.documents import Document, DocumentChunk


@dataclass
class ChunkWrite:
    """One chunk ready to be persisted (chunker output + its embedding)."""
    chunk_index:  int
    content:      str
    token_count:  int
    start_offset: int
    end_offset:   int
    embedding:    list[float]
    page_number:  Optional[int] = None
    metadata:     dict = field(default_factory=dict)


class ChunkRepository:

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def replace_for_document(
        self,
        document_id: uuid.UUID,
        org_id: uuid.UUID,
        chunks: Sequence[ChunkWrite],
    ) -> list[uuid.UUID]:
        """
        Delete every chunk of the document, then bulk-insert the new set.
        Runs inside the caller's transaction, so readers see either the old
        set or the new one once it commits.
        """
        await self.session.execute(
            delete(DocumentChunk).where(
                DocumentChunk.document_id == document_id,
                DocumentChunk.org_id == org_id,
            )
        )
        if not chunks:
            return []

        ids = [uuid.uuid4() for _ in chunks]
        await self.session.execute(
            insert(DocumentChunk),
            [
                {
                    "id":             chunk_id,
                    "document_id":    document_id,
                    "org_id":         org_id,
                    "chunk_index":    chunk.chunk_index,
                    "content":        chunk.content,
                    "token_count":    chunk.token_count,
                    "start_offset":   chunk.start_offset,
                    "end_offset":     chunk.end_offset,
                    "page_number":    chunk.page_number,
                    "embedding":      chunk.embedding,
                    "chunk_metadata": chunk.metadata,
                }
                for chunk_id, chunk in zip(ids, chunks)
            ],
        )
        return ids

    async def list_for_search(
        self,
        org_id: uuid.UUID,
        statuses: Sequence[str],
    ) -> Sequence[DocumentChunk]:
        """
        Every chunk of the org whose live document is in one of `statuses`.
        Ordered by (document_id, chunk_index) so scoring ties break the same
        way on every call.
        """
        result = await self.session.execute(
            select(DocumentChunk)
            .join(Document, Document.id == DocumentChunk.document_id)
            .where(
                DocumentChunk.org_id == org_id,
                Document.index_status.in_(list(statuses)),
                Document.deleted_at.is_(None),
            )
            .order_by(DocumentChunk.document_id, DocumentChunk.chunk_index)
        )
        return result.scalars().all()

    async def get_many(
        self,
        chunk_ids: Iterable[uuid.UUID],
        org_id: uuid.UUID,
    ) -> Sequence[DocumentChunk]:
        ids = list(chunk_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(DocumentChunk)
            .where(DocumentChunk.id.in_(ids), DocumentChunk.org_id == org_id)
            .order_by(DocumentChunk.chunk_index)
        )
        return result.scalars().all()

    async def list_for_document(self, document_id: uuid.UUID) -> Sequence[DocumentChunk]:
        result = await self.session.execute(
            select(DocumentChunk)
            .where(DocumentChunk.document_id == document_id)
            .order_by(DocumentChunk.chunk_index)
        )
        return result.scalars().all()

    async def count(self, org_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(DocumentChunk).where(DocumentChunk.org_id == org_id)
        )
        return int(result.scalar_one())

    async def delete_for_deleted_documents(self, org_id: uuid.UUID) -> int:
        deleted_docs = select(Document.id).where(
            Document.org_id == org_id,
            Document.deleted_at.is_not(None),
        )
        result = await self.session.execute(
            delete(DocumentChunk).where(
                DocumentChunk.org_id == org_id,
                DocumentChunk.document_id.in_(deleted_docs),
            )
        )
        return result.rowcount or 0
