"""
Document Processing Package
════════════════════════════

The pure/provider-facing half of the indexing pipeline:

  Text Extraction → Chunking → Embedding

Modules
───────
  extractor.py  pypdf / python-docx / plain-text extraction
  chunking.py   Recursive character chunker with overlap + small-chunk merge
  embeddings.py Sequential batched embeddings, mock provider, cosine similarity

Design principles
─────────────────
  • Every component is stateless apart from its injected config.
  • Nothing here touches the database; the Indexer owns persistence.
  • Every step emits structured log lines.
"""

from documind.processing.chunking import (
    ChunkOptions,
    TextChunk,
    chunk_by_pages,
    chunk_text,
    merge_small_chunks,
)
from documind.processing.embeddings import EmbeddingBatch, EmbeddingGenerator, cosine_similarity
from documind.processing.extractor import ExtractedText, extract_text

__all__ = [
    "ChunkOptions",
    "TextChunk",
    "chunk_by_pages",
    "chunk_text",
    "merge_small_chunks",
    "EmbeddingBatch",
    "EmbeddingGenerator",
    "cosine_similarity",
    "ExtractedText",
    "extract_text",
]
