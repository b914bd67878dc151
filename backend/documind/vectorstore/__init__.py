from documind.vectorstore.base import ScoredChunk, VectorIndex
from documind.vectorstore.factory import create_vector_index

__all__ = ["VectorIndex", "ScoredChunk", "create_vector_index"]
