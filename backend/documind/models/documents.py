"""
SQLAlchemy ORM Models — Documents & Chunks

Using SQLAlchemy mapped classes (2.x style) for full async support.

Soft delete: documents are never hard-deleted. `deleted_at` is the
tombstone, and every repository query filters on `deleted_at IS NULL`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class IndexStatus(str, Enum):
    """
    Indexing state machine (documents.index_status):

        pending    — uploaded, waiting for the indexer
        processing — indexer is chunking + embedding
        indexed    — chunks stored, searchable
        failed     — last run failed (see index_error)

    A reindex request moves indexed|failed back to pending.
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    INDEXED    = "indexed"
    FAILED     = "failed"


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file through the indexing state machine.

    Created on upload confirmation; mutated only by the Indexer and by
    explicit reindex requests.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "index_status IN ('pending', 'processing', 'indexed', 'failed')",
            name="documents_index_status_check",
        ),
        Index("idx_documents_org_id",  "org_id"),
        Index("idx_documents_status",  "org_id", "index_status"),
        Index("idx_documents_pending", "index_status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    filename:  Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="MIME type or bare extension (pdf, docx, txt, md)",
    )
    storage_path: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Object key in the storage backend; NULL until the upload is confirmed",
    )

    index_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=IndexStatus.PENDING.value,
        server_default=IndexStatus.PENDING.value,
    )
    index_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when index_status='failed'",
    )
    indexed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    page_count: Mapped[Optional[int]]       = mapped_column(Integer, nullable=True)

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="chunks_count, total_tokens, extracted_at written by the indexer",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} org={self.org_id} "
            f"status={self.index_status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model: document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One text chunk of a Document with its embedding.

    Chunks are replaced wholesale on every (re)index, never patched, so
    chunk_index and the [start_offset, end_offset) spans stay consistent.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_position"),
        CheckConstraint("start_offset <= end_offset", name="chunks_offsets_check"),
        Index("idx_chunks_document_id", "document_id"),
        Index("idx_chunks_org_id",      "org_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    chunk_index:  Mapped[int] = mapped_column(Integer, nullable=False)
    content:      Mapped[str] = mapped_column(Text, nullable=False)
    token_count:  Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset:   Mapped[int] = mapped_column(Integer, nullable=False)
    page_number:  Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    embedding: Mapped[list[float]] = mapped_column(
        ARRAY(Float),
        nullable=False,
        comment="Fixed-length vector; dimension set by the embedding provider",
    )
    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<DocumentChunk doc={self.document_id} idx={self.chunk_index}>"
