"""
Service wiring shared by the API lifespan and the Celery worker context.

Everything is built from Settings and an already-open Database; provider
selection happens once here through the resolve_* helpers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from documind.core.config import Settings, resolve_embedding_config, resolve_extraction_config
from documind.db.session import Database
from documind.entities.extractor import EntityExtractor
from documind.entities.resolver import KnowledgeGraphBuilder
from documind.entities.search import EntitySearch
from documind.processing.chunking import ChunkOptions
from documind.processing.embeddings import EmbeddingGenerator
from documind.services.indexer import DocumentIndexer
from documind.services.search import SearchOptions, VectorSearch
from documind.storage.base import StorageBackend
from documind.storage.factory import create_storage
from documind.vectorstore.factory import create_vector_index

logger = logging.getLogger(__name__)


@dataclass
class Services:
    database:      Database
    storage:       StorageBackend
    embeddings:    EmbeddingGenerator
    indexer:       DocumentIndexer
    extractor:     EntityExtractor
    graph_builder: KnowledgeGraphBuilder
    entity_search: EntitySearch
    search:        VectorSearch

    async def aclose(self) -> None:
        await self.embeddings.close()
        await self.storage.close()


def build_services(settings: Settings, database: Database) -> Services:
    uow_factory = database.unit_of_work
    storage     = create_storage(settings)
    embeddings  = EmbeddingGenerator(
        resolve_embedding_config(settings),
        batch_size=settings.embedding_batch_size,
        batch_delay=settings.embedding_batch_delay_seconds,
    )
    extractor = EntityExtractor(resolve_extraction_config(settings))

    chunk_options = ChunkOptions(
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        min_chunk_size=settings.min_chunk_size,
    )
    search_options = SearchOptions(
        limit=settings.search_limit,
        min_score=settings.search_min_score,
    )

    services = Services(
        database=database,
        storage=storage,
        embeddings=embeddings,
        indexer=DocumentIndexer(uow_factory, storage, embeddings, chunk_options),
        extractor=extractor,
        graph_builder=KnowledgeGraphBuilder(uow_factory, extractor),
        entity_search=EntitySearch(uow_factory),
        search=VectorSearch(
            uow_factory,
            embeddings,
            create_vector_index(settings, uow_factory),
            search_options,
        ),
    )
    logger.info(
        "Services built | embeddings=%s extraction=%s storage=%s",
        embeddings.config.provider.value, extractor.provider.value, settings.storage_backend,
    )
    return services
