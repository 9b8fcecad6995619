"""Pydantic schemas for retrieval-augmented queries and context windows."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .documents import DocumentSource
from .vector import DateRange, DocumentRef, SimilarityMetric

RAGQueryType = Literal["semantic_search", "context_retrieval", "document_analysis", "recommendation"]
TruncationStrategy = Literal["head", "tail", "middle", "smart"]
PromptFormatStyle = Literal["bullet", "structured", "paragraph"]


class RankingWeights(BaseModel):
    similarity: float = Field(default=1.0, ge=0.0)
    recency: float = Field(default=0.0, ge=0.0)
    relevance: float = Field(default=0.0, ge=0.0)


class RankingOptions(BaseModel):
    method: Literal["similarity", "recency", "hybrid"] = "similarity"
    weights: Optional[RankingWeights] = None


class RAGFilters(BaseModel):
    document_types: Optional[list[str]] = None
    languages: Optional[list[str]] = None
    embedding_models: Optional[list[str]] = None
    date_range: Optional[DateRange] = None
    workshop_id: Optional[str] = None
    user_id: Optional[str] = None
    min_confidence: Optional[float] = None
    exclude: list[DocumentRef] = Field(default_factory=list)


class AnalyticsOptions(BaseModel):
    track_query: bool = False
    store_context_window: bool = False
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class ContextWindowConfig(BaseModel):
    max_tokens: int = Field(default=4000, ge=1)
    max_documents: int = Field(default=10, ge=1)
    min_chunk_size: int = Field(default=100, ge=0)
    max_chunk_size: Optional[int] = Field(default=None, ge=1)
    truncation_strategy: TruncationStrategy = "smart"


class RAGQueryOptions(BaseModel):
    type: RAGQueryType = "semantic_search"
    max_context_documents: Optional[int] = Field(default=None, ge=1)
    min_similarity_threshold: Optional[float] = None
    include_metadata: bool = True
    context_window: Optional[int] = Field(default=None, ge=1)
    search_limit: Optional[int] = Field(default=None, ge=1)
    metric: Optional[SimilarityMetric] = None
    model: Optional[str] = None
    filters: RAGFilters = Field(default_factory=RAGFilters)
    ranking: Optional[RankingOptions] = None
    analytics: AnalyticsOptions = Field(default_factory=AnalyticsOptions)


class RAGContextDocument(BaseModel):
    id: UUID
    document_type: str
    document_id: str
    content: str
    language: str
    similarity: float
    relevance: float
    confidence: Optional[float] = None
    metadata: Optional[dict[str, Any]] = None
    source: Optional[DocumentSource] = None
    created_at: datetime
    token_count: int = 0
    truncated: bool = False


class ContextWindow(BaseModel):
    documents: list[RAGContextDocument] = Field(default_factory=list)
    token_count: int = 0
    truncated: bool = False


class ContextWindowSummary(BaseModel):
    size: int
    documents: int
    truncated: bool


class PerformanceTimings(BaseModel):
    embedding_time: float
    search_time: float
    total_time: float


class RAGAnalytics(BaseModel):
    query_id: Optional[UUID] = None
    context_window_id: Optional[UUID] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class RAGResult(BaseModel):
    query: str
    query_embedding: list[float]
    context_documents: list[RAGContextDocument]
    total_results: int
    average_similarity: float
    context_window: ContextWindowSummary
    performance: PerformanceTimings
    analytics: Optional[RAGAnalytics] = None


class PromptFormatOptions(BaseModel):
    format_style: PromptFormatStyle = "paragraph"
    include_metadata: bool = True
    context_header: str = "Context Information"


class PopularQuery(BaseModel):
    query: str
    count: int


class TypePerformance(BaseModel):
    count: int
    avg_time: float


class RAGStatistics(BaseModel):
    total_queries: int
    avg_response_time: float
    avg_context_documents: float
    popular_queries: list[PopularQuery] = Field(default_factory=list)
    performance_by_type: dict[str, TypePerformance] = Field(default_factory=dict)
