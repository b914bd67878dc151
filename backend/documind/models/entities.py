"""
SQLAlchemy ORM Models — Knowledge Graph

    entities          — deduplicated named concepts per organization
    entity_mentions   — immutable entity ↔ chunk join records
    relationships     — typed, weighted, directed edges between entities

Entity identity:       (org_id, normalized_name, entity_type) or an alias match
Relationship identity: (org_id, source_entity_id, target_entity_id, relationship_type)
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from documind.models.documents import Base


class EntityType(str, Enum):
    PERSON       = "person"
    ORGANIZATION = "organization"
    LOCATION     = "location"
    DATE         = "date"
    CONCEPT      = "concept"
    PRODUCT      = "product"
    EVENT        = "event"
    TOPIC        = "topic"
    MONEY        = "money"
    TECHNOLOGY   = "technology"
    OTHER        = "other"

    @classmethod
    def normalize(cls, raw: object) -> "EntityType":
        """Map provider output ("Organization", "ORG-ANIZATION", None …) onto the closed set."""
        if not isinstance(raw, str):
            return cls.OTHER
        key = re.sub(r"[^a-z]", "", raw.lower())
        try:
            return cls(key)
        except ValueError:
            return cls.OTHER


class RelationshipType(str, Enum):
    WORKS_FOR     = "works_for"
    REPORTS_TO    = "reports_to"
    COLLABORATES  = "collaborates"
    AUTHORED      = "authored"
    MENTIONED     = "mentioned"
    SUBSIDIARY_OF = "subsidiary_of"
    PARTNER_OF    = "partner_of"
    COMPETES_WITH = "competes_with"
    DISCUSSES     = "discusses"
    RELATES_TO    = "relates_to"
    LOCATED_IN    = "located_in"
    OCCURRED_ON   = "occurred_on"
    INVOLVES      = "involves"
    ASSOCIATED    = "associated"
    OTHER         = "other"

    @classmethod
    def normalize(cls, raw: object) -> "RelationshipType":
        """Unrecognized relationship labels fall back to RELATES_TO."""
        if not isinstance(raw, str):
            return cls.RELATES_TO
        key = re.sub(r"[^a-z0-9]+", "_", raw.strip().lower()).strip("_")
        try:
            return cls(key)
        except ValueError:
            return cls.RELATES_TO


def normalize_entity_name(name: str) -> str:
    return name.strip().lower()


# ---------------------------------------------------------------------------
# Entity: entities
# ---------------------------------------------------------------------------

class Entity(Base):
    __tablename__ = "entities"
    __table_args__ = (
        UniqueConstraint("org_id", "normalized_name", "entity_type", name="uq_entities_identity"),
        Index("idx_entities_org_type", "org_id", "entity_type"),
        Index("idx_entities_mentions", "org_id", "mention_count"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    name:            Mapped[str] = mapped_column(Text, nullable=False)
    normalized_name: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type:     Mapped[str] = mapped_column(Text, nullable=False)
    aliases: Mapped[list[str]] = mapped_column(
        ARRAY(Text),
        nullable=False,
        default=list,
        server_default="{}",
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Rolling mean of observed confidences
    confidence:     Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    mention_count:  Mapped[int]   = mapped_column(Integer, nullable=False, default=1, server_default="1")
    document_count: Mapped[int]   = mapped_column(Integer, nullable=False, default=1, server_default="1")

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

    def __repr__(self) -> str:
        return f"<Entity {self.entity_type}:{self.name!r} mentions={self.mention_count}>"


# ---------------------------------------------------------------------------
# EntityMention: entity_mentions (append-only)
# ---------------------------------------------------------------------------

class EntityMention(Base):
    __tablename__ = "entity_mentions"
    __table_args__ = (
        Index("idx_mentions_entity_id", "entity_id"),
        Index("idx_mentions_chunk_id",  "chunk_id"),
        Index("idx_mentions_document",  "org_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("document_chunks.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    org_id:      Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    mention_text:   Mapped[str] = mapped_column(Text, nullable=False)
    start_offset:   Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset:     Mapped[int] = mapped_column(Integer, nullable=False)
    context_before: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_after:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence:     Mapped[float] = mapped_column(Float, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Relationship: relationships
# ---------------------------------------------------------------------------

class Relationship(Base):
    """
    Directed edge. weight starts at 0.5 and grows by 0.1 per repeat
    observation (unbounded); confidence holds the latest observation;
    evidence lists the chunk ids that produced each observation.
    """

    __tablename__ = "relationships"
    __table_args__ = (
        UniqueConstraint(
            "org_id", "source_entity_id", "target_entity_id", "relationship_type",
            name="uq_relationships_identity",
        ),
        Index("idx_relationships_source", "source_entity_id"),
        Index("idx_relationships_target", "target_entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source_entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_type: Mapped[str] = mapped_column(Text, nullable=False)

    weight:      Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    confidence:  Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence: Mapped[list[str]] = mapped_column(
        ARRAY(Text),
        nullable=False,
        default=list,
        server_default="{}",
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
