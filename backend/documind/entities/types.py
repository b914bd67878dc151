"""Value types passed between the extractor, the resolver and the workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from documind.models.entities import EntityType, RelationshipType


@dataclass
class ExtractedEntity:
    name:           str
    entity_type:    EntityType
    mention_text:   str
    start_offset:   int
    end_offset:     int
    confidence:     float
    context_before: Optional[str] = None
    context_after:  Optional[str] = None


@dataclass
class ExtractedRelationship:
    source_name:       str
    source_type:       EntityType
    target_name:       str
    target_type:       EntityType
    relationship_type: RelationshipType
    confidence:        float
    description:       Optional[str] = None


@dataclass
class ExtractionResult:
    """
    Output of one extraction call.

    used_fallback is True when a real provider was configured but the
    offline heuristics produced this result (timeout, error, bad JSON).
    """
    entities:      list[ExtractedEntity] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)
    tokens_used:   int = 0
    latency_ms:    float = 0.0
    provider:      str = "mock"
    used_fallback: bool = False


@dataclass
class BatchExtractionResult:
    chunks_processed:        int = 0
    chunks_failed:           int = 0
    entities_extracted:      int = 0
    relationships_extracted: int = 0
    tokens_used:             int = 0
