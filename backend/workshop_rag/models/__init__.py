"""Convenience exports for ORM models.

Surface the SQLModel tables so calling code can import them from a single module.
"""

from .document_embedding import DocumentEmbedding
from .embedding_cache import EmbeddingCacheRecord
from .search_query import SearchQueryRecord
from .context_window import ContextWindowRecord
from .vector_index import VectorIndexConfig

__all__ = [
    "DocumentEmbedding",
    "EmbeddingCacheRecord",
    "SearchQueryRecord",
    "ContextWindowRecord",
    "VectorIndexConfig",
]
