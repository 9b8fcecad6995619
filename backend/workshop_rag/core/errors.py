"""Exception taxonomy shared by the embedding, storage and retrieval services.

Input and configuration errors are raised immediately and never retried.
``ProviderError`` and ``StoreError`` mark transient failures that the retry
helper may repeat; once retries are exhausted they surface wrapped in
``EmbeddingGenerationFailed`` or ``VectorStoreOperationFailed``.
"""

from __future__ import annotations

from typing import Any, Sequence


class RAGCoreError(Exception):
    """Base class for all errors raised by workshop_rag."""


class InvalidInput(RAGCoreError, ValueError):
    """Empty text, malformed filters, mismatched vectors."""


class UnsupportedModel(InvalidInput):
    def __init__(self, model: str) -> None:
        super().__init__(f"Unsupported embedding model: {model}")
        self.model = model


class ProviderError(RAGCoreError, RuntimeError):
    """Transient failure reported by an embedding provider."""


class ProviderTimeout(ProviderError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"Embedding provider did not answer within {timeout:.2f}s")
        self.timeout = timeout


class EmbeddingGenerationFailed(RAGCoreError):
    def __init__(
        self,
        message: str,
        *,
        batch_index: int | None = None,
        item_count: int | None = None,
        partial_results: Sequence[Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.item_count = item_count
        self.partial_results = list(partial_results or [])


class StoreError(RAGCoreError):
    """Transient connection or transaction failure in the vector store."""


class VectorStoreOperationFailed(RAGCoreError):
    def __init__(
        self,
        message: str,
        *,
        batch_index: int | None = None,
        item_count: int | None = None,
    ) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.item_count = item_count


class DocumentNotFound(RAGCoreError, LookupError):
    def __init__(self, document_type: str, document_id: str) -> None:
        super().__init__(f"Document not found: {document_type}:{document_id}")
        self.document_type = document_type
        self.document_id = document_id
