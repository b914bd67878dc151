"""
Vector Index — Abstract Base

Every scoring backend implements this interface. Vector Search only speaks
this protocol, so a faster backend (ANN, pgvector) can replace the linear
scan without touching search code.

Ordering contract (enforced by ALL implementations):
  - Only chunks of the given org whose live document has an index status
    in `statuses` are considered.
  - Chunks scoring below `min_score` are dropped.
  - Results are sorted by score descending; ties keep the
    (document_id, chunk_index) order.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ScoredChunk:
    """One chunk with its cosine similarity to the query."""
    chunk_id:    uuid.UUID
    document_id: uuid.UUID
    chunk_index: int
    content:     str
    score:       float
    page_number: Optional[int] = None


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorIndex(ABC):

    @abstractmethod
    async def rank(
        self,
        org_id: uuid.UUID,
        query_vector: Sequence[float],
        *,
        statuses: Sequence[str],
        min_score: float,
    ) -> list[ScoredChunk]:
        """
        Score the org's chunks against `query_vector`.
        Datastore errors propagate; the caller decides how to degrade.
        """
