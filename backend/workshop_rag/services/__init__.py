"""Service layer exports.

Expose the embedding, storage, retrieval and search services for easy importing.
"""

from .analytics import QueryAnalytics
from .embeddings import EmbeddingGenerator
from .ingestion import DocumentIndexer, IngestionSummary
from .metrics import PerformanceMonitor
from .rag import RAGQueryEngine
from .registry import EmbeddingModelDescriptor, ModelRegistry
from .search import SemanticSearchService
from .vector_store import VectorStore

__all__ = [
    "DocumentIndexer",
    "EmbeddingGenerator",
    "EmbeddingModelDescriptor",
    "IngestionSummary",
    "ModelRegistry",
    "PerformanceMonitor",
    "QueryAnalytics",
    "RAGQueryEngine",
    "SemanticSearchService",
    "VectorStore",
]
