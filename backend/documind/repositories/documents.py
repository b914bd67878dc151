"""Typed persistence for Document rows. Soft-deleted rows are invisible here."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from documind.models.documents import Document, IndexStatus


class DocumentRepository:

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, document_id: uuid.UUID) -> Optional[Document]:
        result = await self.session.execute(
            select(Document).where(
                Document.id == document_id,
                Document.deleted_at.is_(None),
            )
        )
        return result.scalars().first()

    async def get_many(
        self,
        document_ids: Iterable[uuid.UUID],
        org_id: uuid.UUID,
    ) -> dict[uuid.UUID, Document]:
        ids = list(document_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(Document).where(
                Document.id.in_(ids),
                Document.org_id == org_id,
                Document.deleted_at.is_(None),
            )
        )
        return {doc.id: doc for doc in result.scalars().all()}

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def mark_processing(self, document_id: uuid.UUID) -> None:
        await self._set(document_id, index_status=IndexStatus.PROCESSING.value)

    async def mark_indexed(
        self,
        document_id: uuid.UUID,
        *,
        page_count: Optional[int],
        metadata: dict,
    ) -> None:
        doc = await self.get(document_id)
        merged = {**(doc.doc_metadata or {}), **metadata} if doc else metadata
        await self._set(
            document_id,
            index_status=IndexStatus.INDEXED.value,
            index_error=None,
            indexed_at=datetime.now(timezone.utc),
            page_count=page_count,
            doc_metadata=merged,
        )

    async def mark_failed(self, document_id: uuid.UUID, error: str) -> None:
        await self._set(
            document_id,
            index_status=IndexStatus.FAILED.value,
            index_error=error,
        )

    async def reset_to_pending(self, document_id: uuid.UUID) -> None:
        await self._set(
            document_id,
            index_status=IndexStatus.PENDING.value,
            index_error=None,
            indexed_at=None,
        )

    async def reset_all_to_pending(self, org_id: uuid.UUID) -> int:
        result = await self.session.execute(
            update(Document)
            .where(Document.org_id == org_id, Document.deleted_at.is_(None))
            .values(index_status=IndexStatus.PENDING.value, index_error=None, indexed_at=None)
        )
        return result.rowcount or 0

    async def _set(self, document_id: uuid.UUID, **values) -> None:
        await self.session.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(**values)
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_pending(self, limit: int) -> Sequence[Document]:
        """Oldest pending documents first."""
        result = await self.session.execute(
            select(Document)
            .where(
                Document.index_status == IndexStatus.PENDING.value,
                Document.deleted_at.is_(None),
            )
            .order_by(Document.created_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def list_pending_ids(self, org_id: uuid.UUID, limit: int) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(Document.id)
            .where(
                Document.org_id == org_id,
                Document.index_status == IndexStatus.PENDING.value,
                Document.deleted_at.is_(None),
            )
            .order_by(Document.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_indexed_ids(self, org_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(Document.id)
            .where(
                Document.org_id == org_id,
                Document.index_status == IndexStatus.INDEXED.value,
                Document.deleted_at.is_(None),
            )
            .order_by(Document.created_at.asc())
        )
        return list(result.scalars().all())

    async def count_by_status(self, org_id: uuid.UUID) -> dict[str, int]:
        result = await self.session.execute(
            select(Document.index_status, func.count())
            .where(Document.org_id == org_id, Document.deleted_at.is_(None))
            .group_by(Document.index_status)
        )
        return {status: count for status, count in result.all()}

    async def search_by_filename(
        self,
        org_id: uuid.UUID,
        pattern: str,
        limit: int,
    ) -> Sequence[Document]:
        """Case-insensitive ILIKE match on filename, newest first."""
        result = await self.session.execute(
            select(Document)
            .where(
                Document.org_id == org_id,
                Document.deleted_at.is_(None),
                Document.filename.ilike(pattern),
            )
            .order_by(Document.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()
