"""
Typed persistence for the knowledge graph: entities, mentions, relationships.

Counter and confidence updates are expressed in SQL (`col = col + 1`) so two
workers resolving the same entity never lose an increment. Entity creation
and relationship upsert both go through INSERT … ON CONFLICT on the identity
key for the same reason.
"""

from __future__ import annotations

import uuid
from typing import Iterable, Optional, Sequence

from sqlalchemy import any_, case, delete, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from documind.models.documents import DocumentChunk
from documind.models.entities import (
    Entity,
    EntityMention,
    Relationship,
    normalize_entity_name,
)

RELATIONSHIP_INITIAL_WEIGHT = 0.5
RELATIONSHIP_WEIGHT_STEP    = 0.1


class KnowledgeGraphRepository:

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def find_entity(
        self,
        org_id: uuid.UUID,
        name: str,
        entity_type: str,
    ) -> Optional[Entity]:
        """Match on normalized name, or on an alias equal to the normalized or raw name."""
        normalized = normalize_entity_name(name)
        result = await self.session.execute(
            select(Entity)
            .where(
                Entity.org_id == org_id,
                Entity.entity_type == entity_type,
                or_(
                    Entity.normalized_name == normalized,
                    any_(Entity.aliases) == normalized,
                    any_(Entity.aliases) == name,
                ),
            )
            .limit(1)
        )
        return result.scalars().first()

    async def find_entity_exact(
        self,
        org_id: uuid.UUID,
        name: str,
        entity_type: str,
    ) -> Optional[Entity]:
        result = await self.session.execute(
            select(Entity).where(
                Entity.org_id == org_id,
                Entity.normalized_name == normalize_entity_name(name),
                Entity.entity_type == entity_type,
            )
        )
        return result.scalars().first()

    async def record_sighting(self, entity_id: uuid.UUID, confidence: float) -> None:
        """mention_count += 1; confidence becomes the mean of stored and observed."""
        await self.session.execute(
            update(Entity)
            .where(Entity.id == entity_id)
            .values(
                mention_count=Entity.mention_count + 1,
                confidence=(Entity.confidence + confidence) / 2,
            )
        )

    async def create_entity(
        self,
        org_id: uuid.UUID,
        name: str,
        entity_type: str,
        confidence: float,
    ) -> uuid.UUID:
        """
        Insert a new entity with mention_count=1. A concurrent insert of the
        same identity turns into a sighting of the row that won.
        """
        table = Entity.__table__
        stmt = insert(Entity).values(
            id=uuid.uuid4(),
            org_id=org_id,
            name=name,
            normalized_name=normalize_entity_name(name),
            entity_type=entity_type,
            aliases=[],
            confidence=confidence,
            mention_count=1,
            document_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_entities_identity",
            set_={
                "mention_count": table.c.mention_count + 1,
                "confidence":    (table.c.confidence + stmt.excluded.confidence) / 2,
            },
        ).returning(Entity.id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def add_mention(
        self,
        *,
        entity_id: uuid.UUID,
        chunk_id: uuid.UUID,
        document_id: uuid.UUID,
        org_id: uuid.UUID,
        mention_text: str,
        start_offset: int,
        end_offset: int,
        context_before: Optional[str],
        context_after: Optional[str],
        confidence: float,
    ) -> uuid.UUID:
        mention = EntityMention(
            id=uuid.uuid4(),
            entity_id=entity_id,
            chunk_id=chunk_id,
            document_id=document_id,
            org_id=org_id,
            mention_text=mention_text,
            start_offset=start_offset,
            end_offset=end_offset,
            context_before=context_before,
            context_after=context_after,
            confidence=confidence,
        )
        self.session.add(mention)
        await self.session.flush()
        return mention.id

    async def delete_orphan_entities(self, org_id: uuid.UUID) -> int:
        result = await self.session.execute(
            delete(Entity).where(Entity.org_id == org_id, Entity.mention_count == 0)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def upsert_relationship(
        self,
        *,
        org_id: uuid.UUID,
        source_entity_id: uuid.UUID,
        target_entity_id: uuid.UUID,
        relationship_type: str,
        confidence: float,
        description: Optional[str],
        chunk_id: uuid.UUID,
    ) -> uuid.UUID:
        """
        First observation: weight 0.5, evidence [chunk_id].
        Repeat observation: weight += 0.1, confidence overwritten, chunk_id appended.

        Entity confidence is averaged across sightings while relationship
        confidence keeps only the latest value. Existing graphs depend on
        this, so it stays until the two are reconciled.
        """
        table = Relationship.__table__
        stmt = insert(Relationship).values(
            id=uuid.uuid4(),
            org_id=org_id,
            source_entity_id=source_entity_id,
            target_entity_id=target_entity_id,
            relationship_type=relationship_type,
            weight=RELATIONSHIP_INITIAL_WEIGHT,
            confidence=confidence,
            description=description,
            evidence=[str(chunk_id)],
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_relationships_identity",
            set_={
                "weight":     table.c.weight + RELATIONSHIP_WEIGHT_STEP,
                "confidence": stmt.excluded.confidence,
                "evidence":   func.array_append(table.c.evidence, str(chunk_id)),
                "updated_at": func.now(),
            },
        ).returning(Relationship.id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Read side (stats + entity-aware search)
    # ------------------------------------------------------------------

    async def count_entities(self, org_id: uuid.UUID) -> int:
        return await self._count(select(func.count()).select_from(Entity).where(Entity.org_id == org_id))

    async def count_mentions(self, org_id: uuid.UUID) -> int:
        return await self._count(
            select(func.count()).select_from(EntityMention).where(EntityMention.org_id == org_id)
        )

    async def count_relationships(self, org_id: uuid.UUID) -> int:
        return await self._count(
            select(func.count()).select_from(Relationship).where(Relationship.org_id == org_id)
        )

    async def count_entities_by_type(self, org_id: uuid.UUID) -> dict[str, int]:
        result = await self.session.execute(
            select(Entity.entity_type, func.count())
            .where(Entity.org_id == org_id)
            .group_by(Entity.entity_type)
        )
        return {entity_type: count for entity_type, count in result.all()}

    async def top_entities(self, org_id: uuid.UUID, limit: int = 10) -> Sequence[Entity]:
        result = await self.session.execute(
            select(Entity)
            .where(Entity.org_id == org_id)
            .order_by(Entity.mention_count.desc(), Entity.confidence.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def entities_in_documents(
        self,
        org_id: uuid.UUID,
        document_ids: Iterable[uuid.UUID],
        limit: int,
    ) -> list[tuple[Entity, int]]:
        """Entities mentioned in any chunk of the documents, most-mentioned first."""
        ids = list(document_ids)
        if not ids:
            return []
        doc_mentions = func.count(EntityMention.id).label("doc_mentions")
        result = await self.session.execute(
            select(Entity, doc_mentions)
            .join(EntityMention, EntityMention.entity_id == Entity.id)
            .join(DocumentChunk, DocumentChunk.id == EntityMention.chunk_id)
            .where(Entity.org_id == org_id, DocumentChunk.document_id.in_(ids))
            .group_by(Entity.id)
            .order_by(doc_mentions.desc(), Entity.confidence.desc())
            .limit(limit)
        )
        return [(entity, int(count)) for entity, count in result.all()]

    async def related_entities(
        self,
        org_id: uuid.UUID,
        entity_ids: Iterable[uuid.UUID],
        limit: int,
    ) -> list[tuple[Entity, str, str, float]]:
        """
        Neighbours of `entity_ids` through any relationship, excluding the
        seeds themselves. Returns (entity, relationship_type, direction,
        confidence) with direction 'outgoing' when the seed is the source.
        """
        ids = list(entity_ids)
        if not ids:
            return []
        direction = case(
            (Relationship.source_entity_id.in_(ids), literal("outgoing")),
            else_=literal("incoming"),
        )
        result = await self.session.execute(
            select(Entity, Relationship.relationship_type, direction, Relationship.confidence)
            .join(
                Relationship,
                or_(Relationship.source_entity_id == Entity.id, Relationship.target_entity_id == Entity.id),
            )
            .where(
                Entity.org_id == org_id,
                Entity.id.not_in(ids),
                or_(Relationship.source_entity_id.in_(ids), Relationship.target_entity_id.in_(ids)),
            )
            .order_by(Relationship.confidence.desc())
        )

        seen: set[uuid.UUID] = set()
        related: list[tuple[Entity, str, str, float]] = []
        for entity, rel_type, rel_direction, confidence in result.all():
            if entity.id in seen:
                continue
            seen.add(entity.id)
            related.append((entity, rel_type, rel_direction, confidence))
            if len(related) >= limit:
                break
        return related

    async def search_entities(
        self,
        org_id: uuid.UUID,
        query: str,
        limit: int,
    ) -> Sequence[Entity]:
        """Substring match on name; exact (case-insensitive) matches first."""
        lowered = query.strip().lower()
        pattern = f"%{lowered}%"
        exact_first = case((func.lower(Entity.name) == lowered, 0), else_=1)
        result = await self.session.execute(
            select(Entity)
            .where(
                Entity.org_id == org_id,
                or_(func.lower(Entity.name).like(pattern), Entity.normalized_name.like(pattern)),
            )
            .order_by(exact_first, Entity.mention_count.desc(), Entity.confidence.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def _count(self, stmt) -> int:
        result = await self.session.execute(stmt)
        return int(result.scalar_one())
