"""Pydantic schemas for vector storage and similarity search."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

SimilarityMetric = Literal["cosine", "l2", "inner_product"]
IndexMethod = Literal["exact", "ivf", "hnsw"]


class DocumentRef(BaseModel):
    document_type: str
    document_id: str


class VectorRecord(BaseModel):
    document_id: str = Field(min_length=1)
    document_type: str
    content: str
    vector: list[float]
    language: str = "en"
    model: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    confidence_score: Optional[float] = None
    token_count: Optional[int] = None


class DateRange(BaseModel):
    start: datetime
    end: datetime


class SearchFilters(BaseModel):
    document_types: Optional[list[str]] = None
    languages: Optional[list[str]] = None
    embedding_models: Optional[list[str]] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    min_confidence: Optional[float] = None
    exclude: list[DocumentRef] = Field(default_factory=list)
    metadata_equals: dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not any(
            (
                self.document_types,
                self.languages,
                self.embedding_models,
                self.created_after,
                self.created_before,
                self.min_confidence is not None,
                self.exclude,
                self.metadata_equals,
            )
        )


class VectorSearchOptions(BaseModel):
    limit: int = Field(default=10, ge=1)
    threshold: Optional[float] = 0.7
    metric: Optional[SimilarityMetric] = None
    filters: SearchFilters = Field(default_factory=SearchFilters)
    include_metadata: bool = True


class UpsertOptions(BaseModel):
    batch_size: Optional[int] = Field(default=None, ge=1)
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_delay: Optional[float] = Field(default=None, ge=0.0)
    skip_existing: bool = True
    on_progress: Optional[Callable[[int, int], None]] = None


class VectorSearchResult(BaseModel):
    id: UUID
    document_id: str
    document_type: str
    content: str
    language: str
    similarity: float
    metadata: Optional[dict[str, Any]] = None
    embedding_model: str
    created_at: datetime
    confidence: Optional[float] = None


class EmbeddingStatistics(BaseModel):
    total_embeddings: int
    by_type: dict[str, int]
    by_language: dict[str, int]
    by_model: dict[str, int]
    average_dimension: int
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class IndexPlan(BaseModel):
    method: IndexMethod
    row_count: int
    params: dict[str, Any] = Field(default_factory=dict)
