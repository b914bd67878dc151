"""
Vector Index Factory

Selects the scoring backend from settings. The rest of the app only sees
VectorIndex.
"""

from __future__ import annotations

from documind.core.config import Settings
from documind.db.session import UnitOfWorkFactory
from documind.vectorstore.base import VectorIndex


def create_vector_index(settings: Settings, uow_factory: UnitOfWorkFactory) -> VectorIndex:
    backend = settings.vector_index_backend.lower()

    if backend == "linear":
        from documind.vectorstore.linear import LinearScanIndex
        return LinearScanIndex(uow_factory)

    raise ValueError(
        f"Unknown vector index backend: '{backend}'. "
        f"Valid options: 'linear'"
    )
