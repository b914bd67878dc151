"""
Vector Search
═════════════

  search_documents(org_id, query)
    embed query → rank org chunks (VectorIndex) → keep best chunk per
    document → first `limit` documents → join document metadata → snippet

  search_with_fallback(org_id, query)
    vector search first; when it yields nothing (no indexed chunks yet,
    provider down) fall back to a case-insensitive filename match with
    synthetic scores 0.5, 0.45, 0.40 … (never below FALLBACK_MIN_SCORE)

Availability over strictness: embedding and datastore failures are logged
and turn into an empty result list, never an exception.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from documind.db.session import UnitOfWorkFactory
from documind.models.documents import IndexStatus
from documind.processing.embeddings import EmbeddingGenerator
from documind.vectorstore.base import ScoredChunk, VectorIndex

logger = logging.getLogger(__name__)

DEFAULT_LIMIT     = 10
DEFAULT_MIN_SCORE = 0.3

SNIPPET_LENGTH      = 200
SNIPPET_STEP        = 50
SNIPPET_EDGE_WINDOW = 20     # leading cut must fall within this many chars
SNIPPET_TAIL_SLACK  = 30     # trailing cut must fall within this many chars of the end
ELLIPSIS            = "..."

FALLBACK_START_SCORE = 0.5
FALLBACK_SCORE_STEP  = 0.05
FALLBACK_MIN_SCORE   = 0.01

_TERM_RE = re.compile(r"[a-z0-9]+")


@dataclass
class SearchOptions:
    limit:     int = DEFAULT_LIMIT
    min_score: float = DEFAULT_MIN_SCORE
    statuses:  list[str] = field(default_factory=lambda: [IndexStatus.INDEXED.value])


@dataclass
class SearchResult:
    document_id: uuid.UUID
    filename:    str
    file_type:   str
    score:       float
    snippet:     str
    chunk_id:    Optional[uuid.UUID] = None
    chunk_index: Optional[int] = None
    page_number: Optional[int] = None
    match_type:  str = "semantic"     # "semantic" | "filename"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def dedupe_by_document(ranked: Sequence[ScoredChunk]) -> list[ScoredChunk]:
    """Keep the first (highest-scoring) chunk of each document, preserving order."""
    seen: set[uuid.UUID] = set()
    best: list[ScoredChunk] = []
    for chunk in ranked:
        if chunk.document_id in seen:
            continue
        seen.add(chunk.document_id)
        best.append(chunk)
    return best


def create_snippet(content: str, query: str, max_length: int = SNIPPET_LENGTH) -> str:
    """
    Pick the window of `max_length` chars containing the most distinct query
    terms (longer than 2 chars), scanning in steps of 50. The first best
    window wins. Cut edges are moved to word boundaries and marked with '...'.
    """
    lower = content.lower()
    terms = {w for w in query.lower().split() if len(w) > 2}

    best_start = 0
    best_score = 0
    for start in range(0, len(content) - max_length, SNIPPET_STEP):
        window = lower[start:start + max_length]
        score = sum(1 for term in terms if term in window)
        if score > best_score:
            best_score = score
            best_start = start

    snippet = content[best_start:best_start + max_length]

    if best_start > 0:
        first_space = snippet.find(" ")
        if 0 < first_space < SNIPPET_EDGE_WINDOW:
            snippet = ELLIPSIS + snippet[first_space + 1:]
        else:
            snippet = ELLIPSIS + snippet

    if best_start + max_length < len(content):
        last_space = snippet.rfind(" ")
        if last_space > max_length - SNIPPET_TAIL_SLACK:
            snippet = snippet[:last_space] + ELLIPSIS
        else:
            snippet = snippet + ELLIPSIS

    return snippet.strip()


def filename_pattern(query: str) -> Optional[str]:
    """
    ILIKE pattern matching every alphanumeric term of the query in order,
    so "Q3 Report" matches "Q3-Report.pdf" (pattern '%q3%report%').
    """
    terms = _TERM_RE.findall(query.lower())
    if not terms:
        return None
    return "%" + "%".join(terms) + "%"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class VectorSearch:

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        embeddings:  EmbeddingGenerator,
        index:       VectorIndex,
        default_options: SearchOptions | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._embeddings  = embeddings
        self._index       = index
        self._defaults    = default_options or SearchOptions()

    async def search_documents(
        self,
        org_id: uuid.UUID,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        opts = options or self._defaults
        if not query.strip():
            return []

        try:
            query_vector = await self._embeddings.embed_query(query)
        except Exception as exc:
            logger.warning("Query embedding failed | org=%s error=%s", org_id, exc)
            return []

        try:
            ranked = await self._index.rank(
                org_id, query_vector,
                statuses=opts.statuses,
                min_score=opts.min_score,
            )
        except Exception as exc:
            # e.g. chunk table not provisioned yet: same as having no chunks
            logger.warning("Chunk ranking failed, treating as empty | org=%s error=%s", org_id, exc)
            return []

        top = dedupe_by_document(ranked)[:opts.limit]
        if not top:
            return []

        try:
            async with self._uow_factory() as uow:
                documents = await uow.documents.get_many([c.document_id for c in top], org_id)
        except Exception as exc:
            logger.warning("Document lookup for search failed | org=%s error=%s", org_id, exc)
            return []

        results: list[SearchResult] = []
        for chunk in top:
            doc = documents.get(chunk.document_id)
            if doc is None:
                continue
            results.append(SearchResult(
                document_id=doc.id,
                filename=doc.filename,
                file_type=doc.file_type,
                score=chunk.score,
                snippet=create_snippet(chunk.content, query),
                chunk_id=chunk.chunk_id,
                chunk_index=chunk.chunk_index,
                page_number=chunk.page_number,
            ))

        logger.info(
            "Vector search | org=%s query_len=%d ranked=%d returned=%d",
            org_id, len(query), len(ranked), len(results),
        )
        return results

    async def search_with_fallback(
        self,
        org_id: uuid.UUID,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        opts = options or self._defaults

        results = await self.search_documents(org_id, query, opts)
        if results:
            return results

        pattern = filename_pattern(query)
        if pattern is None:
            return []

        try:
            async with self._uow_factory() as uow:
                documents = await uow.documents.search_by_filename(org_id, pattern, opts.limit)
        except Exception as exc:
            logger.warning("Filename fallback failed | org=%s error=%s", org_id, exc)
            return []

        if documents:
            logger.info("Filename fallback | org=%s matches=%d", org_id, len(documents))

        return [
            SearchResult(
                document_id=doc.id,
                filename=doc.filename,
                file_type=doc.file_type,
                score=max(FALLBACK_START_SCORE - i * FALLBACK_SCORE_STEP, FALLBACK_MIN_SCORE),
                snippet=f"Matching filename: {doc.filename}",
                match_type="filename",
            )
            for i, doc in enumerate(documents)
        ]
