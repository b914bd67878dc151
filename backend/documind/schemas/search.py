"""
Search, knowledge-graph and queue response schemas.
"""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field

from documind.workers.queue import BatchOperation


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchResultItem(BaseModel):
    document_id: UUID
    filename:    str
    file_type:   str
    score:       float
    snippet:     str
    match_type:  str = Field(..., description="semantic | filename")
    chunk_id:    UUID | None = None
    chunk_index: int | None = None
    page_number: int | None = None


class EntityItem(BaseModel):
    id:            UUID
    name:          str
    entity_type:   str
    mention_count: int
    confidence:    float


class RelatedEntityItem(BaseModel):
    id:                UUID
    name:              str
    entity_type:       str
    relationship_type: str
    direction:         str


class EntityContextResponse(BaseModel):
    entities:         list[EntityItem]
    related_entities: list[RelatedEntityItem]
    summary:          str


class SearchResponse(BaseModel):
    query:          str
    results:        list[SearchResultItem]
    total:          int
    entity_context: EntityContextResponse | None = None


# ---------------------------------------------------------------------------
# Knowledge graph
# ---------------------------------------------------------------------------

class EntityStatsResponse(BaseModel):
    total_entities:      int
    total_mentions:      int
    total_relationships: int
    by_type:             dict[str, int]
    top_entities:        list[EntityItem]


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

class QueueStatsItem(BaseModel):
    waiting:   int
    active:    int
    completed: int
    failed:    int
    delayed:   int


class BatchOperationRequest(BaseModel):
    operation_type: BatchOperation
    options:        dict = Field(default_factory=dict)


class BatchJobResponse(BaseModel):
    job_id: str
    queue:  str
