"""
Linear-scan vector index: exact cosine similarity over every chunk of the
organization. This is the reference ranking every other backend must match.
"""

from __future__ import annotations

import logging
import uuid
from typing import Sequence

from documind.core.exceptions import ValidationError
from documind.db.session import UnitOfWorkFactory
from documind.processing.embeddings import cosine_similarity
from documind.vectorstore.base import ScoredChunk, VectorIndex

logger = logging.getLogger(__name__)


class LinearScanIndex(VectorIndex):

    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def rank(
        self,
        org_id: uuid.UUID,
        query_vector: Sequence[float],
        *,
        statuses: Sequence[str],
        min_score: float,
    ) -> list[ScoredChunk]:
        async with self._uow_factory() as uow:
            chunks = await uow.chunks.list_for_search(org_id, statuses)

        scored: list[ScoredChunk] = []
        mismatched = 0
        for chunk in chunks:
            try:
                score = cosine_similarity(query_vector, chunk.embedding)
            except ValidationError:
                # Embedded with a different provider/dimension; not comparable
                mismatched += 1
                continue
            if score < min_score:
                continue
            scored.append(ScoredChunk(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                score=score,
                page_number=chunk.page_number,
            ))

        if mismatched:
            logger.warning(
                "Linear scan skipped chunks with mismatched dimensions | org=%s skipped=%d dims=%d",
                org_id, mismatched, len(query_vector),
            )

        # list.sort is stable: equal scores keep the repository order
        scored.sort(key=lambda c: c.score, reverse=True)
        logger.debug(
            "Linear scan | org=%s scanned=%d kept=%d min_score=%.2f",
            org_id, len(chunks), len(scored), min_score,
        )
        return scored
