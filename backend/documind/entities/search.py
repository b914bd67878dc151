"""
Entity-Aware Search
═══════════════════

Read-side helpers over the knowledge graph, used to enrich search results
and RAG prompts:

  get_entity_stats()      totals, counts per type, top entities
  entities_for_documents  entities mentioned in a set of result documents
  related_entities        one-hop neighbours through relationships
  search_by_name          substring match, exact match first
  get_search_context      all of the above for a result set

Enrichment is optional: the lookup helpers log and return empty results on
datastore errors instead of failing the surrounding search.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Sequence

from documind.db.session import UnitOfWorkFactory
from documind.models.entities import Entity

logger = logging.getLogger(__name__)


@dataclass
class EntityContext:
    id:            uuid.UUID
    name:          str
    entity_type:   str
    mention_count: int
    confidence:    float

    @classmethod
    def from_entity(cls, entity: Entity) -> "EntityContext":
        return cls(
            id=entity.id,
            name=entity.name,
            entity_type=entity.entity_type,
            mention_count=entity.mention_count,
            confidence=entity.confidence,
        )


@dataclass
class RelatedEntity:
    id:                uuid.UUID
    name:              str
    entity_type:       str
    relationship_type: str
    direction:         str   # "incoming" | "outgoing"


@dataclass
class EntityStats:
    total_entities:      int
    total_mentions:      int
    total_relationships: int
    by_type:             dict[str, int] = field(default_factory=dict)
    top_entities:        list[EntityContext] = field(default_factory=list)


@dataclass
class EntitySearchContext:
    entities:         list[EntityContext]
    related_entities: list[RelatedEntity]
    summary:          str


# ---------------------------------------------------------------------------
# Pure formatting helpers
# ---------------------------------------------------------------------------

def _type_label(entity_type: str) -> str:
    return entity_type.replace("_", " ").capitalize()


def generate_entity_summary(entities: Sequence[EntityContext]) -> str:
    """One line for prompt context, e.g. 'Key entities mentioned: Persons: Ada; Organizations: Acme'."""
    if not entities:
        return ""

    by_type: dict[str, list[str]] = {}
    for entity in entities:
        by_type.setdefault(entity.entity_type, []).append(entity.name)

    parts = [
        f"{_type_label(entity_type)}s: {', '.join(names[:5])}"
        for entity_type, names in by_type.items()
    ]
    return f"Key entities mentioned: {'; '.join(parts)}"


def build_entity_enriched_context(
    entities: Sequence[EntityContext],
    related: Sequence[RelatedEntity],
) -> str:
    """Markdown block listing entities by type plus key relationships."""
    if not entities:
        return ""

    lines = [
        "## Knowledge Graph Context",
        "",
        "The following entities are mentioned in the relevant documents:",
        "",
    ]

    by_type: dict[str, list[EntityContext]] = {}
    for entity in entities:
        by_type.setdefault(entity.entity_type, []).append(entity)

    for entity_type, group in by_type.items():
        lines.append(f"### {_type_label(entity_type)}s")
        for entity in group[:3]:
            lines.append(f"- {entity.name} ({entity.mention_count} mentions)")
        lines.append("")

    if related:
        lines.append("### Key Relationships")
        for rel in related[:5]:
            arrow = "→" if rel.direction == "outgoing" else "←"
            label = rel.relationship_type.replace("_", " ").lower()
            lines.append(f"- {arrow} {label}: {rel.name} ({rel.entity_type})")
        lines.append("")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Datastore-backed queries
# ---------------------------------------------------------------------------

class EntitySearch:

    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def get_entity_stats(self, org_id: uuid.UUID, top_n: int = 10) -> EntityStats:
        async with self._uow_factory() as uow:
            return EntityStats(
                total_entities=await uow.graph.count_entities(org_id),
                total_mentions=await uow.graph.count_mentions(org_id),
                total_relationships=await uow.graph.count_relationships(org_id),
                by_type=await uow.graph.count_entities_by_type(org_id),
                top_entities=[
                    EntityContext.from_entity(e)
                    for e in await uow.graph.top_entities(org_id, top_n)
                ],
            )

    async def entities_for_documents(
        self,
        org_id: uuid.UUID,
        document_ids: Sequence[uuid.UUID],
        limit: int = 10,
    ) -> list[EntityContext]:
        if not document_ids:
            return []
        try:
            async with self._uow_factory() as uow:
                rows = await uow.graph.entities_in_documents(org_id, document_ids, limit)
        except Exception as exc:
            logger.warning("Entity lookup for documents failed | org=%s error=%s", org_id, exc)
            return []
        return [EntityContext.from_entity(entity) for entity, _ in rows]

    async def related_entities(
        self,
        org_id: uuid.UUID,
        entity_ids: Sequence[uuid.UUID],
        limit: int = 10,
    ) -> list[RelatedEntity]:
        if not entity_ids:
            return []
        try:
            async with self._uow_factory() as uow:
                rows = await uow.graph.related_entities(org_id, entity_ids, limit)
        except Exception as exc:
            logger.warning("Related entity lookup failed | org=%s error=%s", org_id, exc)
            return []
        return [
            RelatedEntity(
                id=entity.id,
                name=entity.name,
                entity_type=entity.entity_type,
                relationship_type=rel_type,
                direction=direction,
            )
            for entity, rel_type, direction, _confidence in rows
        ]

    async def search_by_name(
        self,
        org_id: uuid.UUID,
        query: str,
        limit: int = 5,
    ) -> list[EntityContext]:
        if not query.strip():
            return []
        try:
            async with self._uow_factory() as uow:
                entities = await uow.graph.search_entities(org_id, query, limit)
        except Exception as exc:
            logger.warning("Entity name search failed | org=%s error=%s", org_id, exc)
            return []
        return [EntityContext.from_entity(e) for e in entities]

    async def get_search_context(
        self,
        org_id: uuid.UUID,
        document_ids: Sequence[uuid.UUID],
    ) -> EntitySearchContext:
        entities = await self.entities_for_documents(org_id, document_ids, limit=15)
        related  = await self.related_entities(org_id, [e.id for e in entities], limit=10)
        return EntitySearchContext(
            entities=entities,
            related_entities=related,
            summary=generate_entity_summary(entities),
        )
