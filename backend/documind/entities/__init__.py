"""
Knowledge Graph Package

  extractor.py  LLM extraction (langchain-openai) with offline fallback
  offline.py    Deterministic regex/heuristic extractor
  resolver.py   Entity resolution, mention recording, relationship upsert
  search.py     Entity stats and entity-aware search context
"""

from documind.entities.extractor import EntityExtractor
from documind.entities.resolver import EntityResolver, KnowledgeGraphBuilder
from documind.entities.search import EntitySearch
from documind.entities.types import (
    BatchExtractionResult,
    ExtractedEntity,
    ExtractedRelationship,
    ExtractionResult,
)

__all__ = [
    "EntityExtractor",
    "EntityResolver",
    "KnowledgeGraphBuilder",
    "EntitySearch",
    "BatchExtractionResult",
    "ExtractedEntity",
    "ExtractedRelationship",
    "ExtractionResult",
]
