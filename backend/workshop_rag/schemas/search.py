"""Pydantic schemas for the semantic search facade."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from .rag import RankingWeights
from .vector import DateRange

SearchQueryType = Literal["semantic", "filtered", "multilingual", "hybrid"]
SortField = Literal["relevance", "date", "confidence"]


class ConfidenceRange(BaseModel):
    min: float = Field(default=0.0, ge=0.0, le=1.0)
    max: float = Field(default=1.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ConfidenceRange":
        if self.min > self.max:
            raise ValueError("confidence range min must not exceed max")
        return self


class TextFilters(BaseModel):
    include_terms: list[str] = Field(default_factory=list)
    exclude_terms: list[str] = Field(default_factory=list)
    exact_phrase: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.include_terms or self.exclude_terms or self.exact_phrase)


class AdvancedSearchFilters(BaseModel):
    document_types: Optional[list[str]] = None
    languages: Optional[list[str]] = None
    date_range: Optional[DateRange] = None
    workshop_id: Optional[str] = None
    user_id: Optional[str] = None
    confidence_range: Optional[ConfidenceRange] = None
    text_filters: Optional[TextFilters] = None
    metadata_filters: dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not any(
            (
                self.document_types,
                self.languages,
                self.date_range,
                self.workshop_id,
                self.user_id,
                self.confidence_range,
                self.text_filters is not None and not self.text_filters.is_empty(),
                self.metadata_filters,
            )
        )


class SearchPagination(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    sort_by: SortField = "relevance"
    sort_order: Literal["asc", "desc"] = "desc"


class SemanticSearchOptions(BaseModel):
    type: SearchQueryType = "semantic"
    model: Optional[str] = None
    filters: AdvancedSearchFilters = Field(default_factory=AdvancedSearchFilters)
    pagination: SearchPagination = Field(default_factory=SearchPagination)
    threshold: Optional[float] = None
    include_facets: bool = True
    include_highlights: bool = True
    include_suggestions: bool = False
    track_analytics: bool = True
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    preferred_languages: list[str] = Field(default_factory=list)
    keyword_query: Optional[str] = None
    semantic_weight: float = Field(default=0.7, ge=0.0)
    keyword_weight: float = Field(default=0.3, ge=0.0)
    ranking: Optional[RankingWeights] = None


class SemanticSearchResult(BaseModel):
    id: UUID
    document_id: str
    document_type: str
    content: str
    language: str
    similarity: float
    relevance: float
    confidence: Optional[float] = None
    highlights: list[str] = Field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime


class SearchFacets(BaseModel):
    document_types: dict[str, int] = Field(default_factory=dict)
    languages: dict[str, int] = Field(default_factory=dict)
    date_ranges: dict[str, int] = Field(default_factory=dict)


class PaginationInfo(BaseModel):
    limit: int
    offset: int
    has_more: bool


class SearchAnalyticsSummary(BaseModel):
    query_id: Optional[UUID] = None
    query_text: str
    result_count: int
    average_similarity: float
    search_time: float
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime


class SemanticSearchResponse(BaseModel):
    query: str
    query_type: SearchQueryType
    detected_language: str
    results: list[SemanticSearchResult]
    total_results: int
    search_time: float
    pagination: PaginationInfo
    facets: Optional[SearchFacets] = None
    suggestions: Optional[list[str]] = None
    analytics: Optional[SearchAnalyticsSummary] = None


class SearchHistoryEntry(BaseModel):
    query: str
    query_type: str
    result_count: int
    average_similarity: Optional[float] = None
    timestamp: datetime


class SearchTrend(BaseModel):
    query: str
    frequency: int
    avg_results: float
    trend: Literal["up", "down", "stable"]
