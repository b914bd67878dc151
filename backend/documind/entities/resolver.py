"""
Entity Resolver / Knowledge Graph Builder
══════════════════════════════════════════

Merges extracted entities into the per-organization entity table and
turns extracted relationships into weighted edges.

  resolve()              alias-aware lookup within (org, type);
                         hit  → mention_count + 1, confidence = mean(old, new)
                         miss → new entity, mention_count 1
  record_mention()       always appends an EntityMention, never deduplicated;
                         offsets are clamped to the chunk content
  create_relationship()  exact (normalized name, type) lookup of both ends,
                         no alias matching; a missing end skips the edge;
                         otherwise upsert (weight +0.1, confidence overwritten,
                         chunk id appended to evidence)

Note the asymmetry: entity confidence is averaged while relationship
confidence is replaced by the latest observation. Both are kept as-is for
compatibility with existing graphs.

KnowledgeGraphBuilder runs extraction + resolution chunk by chunk. Each
chunk is its own transaction; a failing chunk is logged and skipped.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Sequence

from documind.db.session import UnitOfWorkFactory
from documind.entities.extractor import EntityExtractor
from documind.entities.types import (
    BatchExtractionResult,
    ExtractedEntity,
    ExtractedRelationship,
)
from documind.models.documents import DocumentChunk
from documind.repositories.entities import KnowledgeGraphRepository

logger = logging.getLogger(__name__)

MENTION_CONTEXT_CHARS = 50


class EntityResolver:
    """Knowledge-graph writes for one transaction (bound to its repository)."""

    def __init__(self, graph: KnowledgeGraphRepository) -> None:
        self._graph = graph

    async def resolve(self, org_id: uuid.UUID, entity: ExtractedEntity) -> uuid.UUID:
        existing = await self._graph.find_entity(org_id, entity.name, entity.entity_type.value)
        if existing is not None:
            await self._graph.record_sighting(existing.id, entity.confidence)
            return existing.id

        return await self._graph.create_entity(
            org_id=org_id,
            name=entity.name,
            entity_type=entity.entity_type.value,
            confidence=entity.confidence,
        )

    async def record_mention(
        self,
        entity_id: uuid.UUID,
        chunk: DocumentChunk,
        entity: ExtractedEntity,
    ) -> uuid.UUID:
        content = chunk.content or ""
        start = max(0, min(entity.start_offset, len(content)))
        end   = max(start, min(entity.end_offset, len(content)))

        context_before = entity.context_before
        if context_before is None:
            context_before = content[max(0, start - MENTION_CONTEXT_CHARS):start]
        context_after = entity.context_after
        if context_after is None:
            context_after = content[end:end + MENTION_CONTEXT_CHARS]

        return await self._graph.add_mention(
            entity_id=entity_id,
            chunk_id=chunk.id,
            document_id=chunk.document_id,
            org_id=chunk.org_id,
            mention_text=entity.mention_text,
            start_offset=start,
            end_offset=end,
            context_before=context_before,
            context_after=context_after,
            confidence=entity.confidence,
        )

    async def create_relationship(
        self,
        org_id: uuid.UUID,
        relationship: ExtractedRelationship,
        chunk_id: uuid.UUID,
    ) -> Optional[uuid.UUID]:
        source = await self._graph.find_entity_exact(
            org_id, relationship.source_name, relationship.source_type.value,
        )
        target = await self._graph.find_entity_exact(
            org_id, relationship.target_name, relationship.target_type.value,
        )
        if source is None or target is None:
            logger.debug(
                "Relationship skipped, unresolved endpoint | org=%s %s -[%s]-> %s",
                org_id, relationship.source_name,
                relationship.relationship_type.value, relationship.target_name,
            )
            return None

        return await self._graph.upsert_relationship(
            org_id=org_id,
            source_entity_id=source.id,
            target_entity_id=target.id,
            relationship_type=relationship.relationship_type.value,
            confidence=relationship.confidence,
            description=relationship.description,
            chunk_id=chunk_id,
        )


class KnowledgeGraphBuilder:
    """
    Batch driver: extract → resolve → record, one chunk at a time.

    Usage::

        builder = KnowledgeGraphBuilder(database.unit_of_work, extractor)
        result  = await builder.extract_entities_from_chunks(org_id, chunks)
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, extractor: EntityExtractor) -> None:
        self._uow_factory = uow_factory
        self._extractor   = extractor

    async def extract_entities_from_chunks(
        self,
        org_id: uuid.UUID,
        chunks: Sequence[DocumentChunk],
    ) -> BatchExtractionResult:
        result = BatchExtractionResult()

        for chunk in chunks:
            try:
                extraction = await self._extractor.extract(chunk.content)

                async with self._uow_factory() as uow:
                    resolver = EntityResolver(uow.graph)
                    for entity in extraction.entities:
                        entity_id = await resolver.resolve(org_id, entity)
                        await resolver.record_mention(entity_id, chunk, entity)
                    for relationship in extraction.relationships:
                        await resolver.create_relationship(org_id, relationship, chunk.id)

            except Exception as exc:
                result.chunks_failed += 1
                logger.error(
                    "Entity extraction failed for chunk | org=%s chunk=%s error=%s",
                    org_id, chunk.id, exc,
                    exc_info=True,
                )
                continue

            result.chunks_processed        += 1
            result.entities_extracted      += len(extraction.entities)
            result.relationships_extracted += len(extraction.relationships)
            result.tokens_used             += extraction.tokens_used

        logger.info(
            "Entity extraction batch | org=%s chunks=%d failed=%d entities=%d relationships=%d",
            org_id, result.chunks_processed, result.chunks_failed,
            result.entities_extracted, result.relationships_extracted,
        )
        return result
