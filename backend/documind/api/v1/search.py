"""
Search & Knowledge Graph API Router

  GET /api/v1/orgs/{org_id}/search?q=...           vector search, filename fallback
  GET /api/v1/orgs/{org_id}/entities/stats         entity / mention / relationship counts
  GET /api/v1/orgs/{org_id}/entities?q=...         entity name search

Search never fails on provider or datastore errors; it returns an empty
result list instead.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Query

from documind.api.dependencies import AppServices
from documind.entities.search import EntityContext, RelatedEntity
from documind.schemas.search import (
    EntityContextResponse,
    EntityItem,
    EntityStatsResponse,
    RelatedEntityItem,
    SearchResponse,
    SearchResultItem,
)
from documind.services.search import SearchOptions

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orgs/{org_id}",
    tags=["Search"],
)


def _entity_item(entity: EntityContext) -> EntityItem:
    return EntityItem(**vars(entity))


def _related_item(related: RelatedEntity) -> RelatedEntityItem:
    return RelatedEntityItem(**vars(related))


@router.get("/search", response_model=SearchResponse, summary="Semantic document search")
async def search_documents(
    org_id: uuid.UUID,
    services: AppServices,
    q: str = Query(..., min_length=1, max_length=1000, description="Search query"),
    limit: int = Query(10, ge=1, le=50),
    min_score: float = Query(0.3, ge=0.0, le=1.0),
    fallback: bool = Query(True, description="Match filenames when vector search finds nothing"),
    include_entities: bool = Query(False, description="Attach knowledge-graph context"),
) -> SearchResponse:
    options = SearchOptions(limit=limit, min_score=min_score)
    if fallback:
        results = await services.search.search_with_fallback(org_id, q, options)
    else:
        results = await services.search.search_documents(org_id, q, options)

    entity_context = None
    if include_entities and results:
        context = await services.entity_search.get_search_context(
            org_id, [r.document_id for r in results],
        )
        entity_context = EntityContextResponse(
            entities=[_entity_item(e) for e in context.entities],
            related_entities=[_related_item(r) for r in context.related_entities],
            summary=context.summary,
        )

    return SearchResponse(
        query=q,
        results=[SearchResultItem(**vars(r)) for r in results],
        total=len(results),
        entity_context=entity_context,
    )


@router.get(
    "/entities/stats",
    response_model=EntityStatsResponse,
    tags=["Knowledge Graph"],
    summary="Knowledge-graph totals for the organization",
)
async def entity_stats(org_id: uuid.UUID, services: AppServices) -> EntityStatsResponse:
    stats = await services.entity_search.get_entity_stats(org_id)
    return EntityStatsResponse(
        total_entities=stats.total_entities,
        total_mentions=stats.total_mentions,
        total_relationships=stats.total_relationships,
        by_type=stats.by_type,
        top_entities=[_entity_item(e) for e in stats.top_entities],
    )


@router.get(
    "/entities",
    response_model=list[EntityItem],
    tags=["Knowledge Graph"],
    summary="Find entities by name",
)
async def search_entities(
    org_id: uuid.UUID,
    services: AppServices,
    q: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(5, ge=1, le=50),
) -> list[EntityItem]:
    entities = await services.entity_search.search_by_name(org_id, q, limit)
    return [_entity_item(e) for e in entities]
