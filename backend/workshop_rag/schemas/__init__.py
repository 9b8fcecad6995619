"""Convenience exports for service schemas.

Re-exports the pydantic models used across the services so consumers can import from one module.
"""

from .documents import (
    AnalysisResultMetadata,
    DocumentChange,
    DocumentSource,
    DocumentType,
    QuestionMetadata,
    QuestionnaireResponseMetadata,
    UserProfileMetadata,
    WorkshopContentMetadata,
    describe_source,
    parse_document_metadata,
)
from .embedding import (
    BatchEmbeddingOptions,
    CostDetail,
    CostEstimate,
    EmbeddingHealth,
    EmbeddingResult,
    LanguageAlternative,
    LanguageDetection,
)
from .metrics import (
    EmbeddingOperationMetrics,
    IndexHealth,
    IndexOptimization,
    IndexRecommendation,
    PerformanceAlert,
    PerformanceReport,
    SearchOperationMetrics,
)
from .rag import (
    AnalyticsOptions,
    ContextWindow,
    ContextWindowConfig,
    ContextWindowSummary,
    PerformanceTimings,
    PromptFormatOptions,
    RAGContextDocument,
    RAGFilters,
    RAGQueryOptions,
    RAGResult,
    RAGStatistics,
    RankingOptions,
    RankingWeights,
)
from .search import (
    AdvancedSearchFilters,
    ConfidenceRange,
    SearchFacets,
    SearchHistoryEntry,
    SearchPagination,
    SearchTrend,
    SemanticSearchOptions,
    SemanticSearchResponse,
    SemanticSearchResult,
    TextFilters,
)
from .vector import (
    DateRange,
    DocumentRef,
    EmbeddingStatistics,
    IndexPlan,
    SearchFilters,
    UpsertOptions,
    VectorRecord,
    VectorSearchOptions,
    VectorSearchResult,
)

__all__ = [
    "AnalysisResultMetadata",
    "DocumentChange",
    "DocumentSource",
    "DocumentType",
    "QuestionMetadata",
    "QuestionnaireResponseMetadata",
    "UserProfileMetadata",
    "WorkshopContentMetadata",
    "describe_source",
    "parse_document_metadata",
    "BatchEmbeddingOptions",
    "CostDetail",
    "CostEstimate",
    "EmbeddingHealth",
    "EmbeddingResult",
    "LanguageAlternative",
    "LanguageDetection",
    "EmbeddingOperationMetrics",
    "IndexHealth",
    "IndexOptimization",
    "IndexRecommendation",
    "PerformanceAlert",
    "PerformanceReport",
    "SearchOperationMetrics",
    "AnalyticsOptions",
    "ContextWindow",
    "ContextWindowConfig",
    "ContextWindowSummary",
    "PerformanceTimings",
    "PromptFormatOptions",
    "RAGContextDocument",
    "RAGFilters",
    "RAGQueryOptions",
    "RAGResult",
    "RAGStatistics",
    "RankingOptions",
    "RankingWeights",
    "AdvancedSearchFilters",
    "ConfidenceRange",
    "SearchFacets",
    "SearchHistoryEntry",
    "SearchPagination",
    "SearchTrend",
    "SemanticSearchOptions",
    "SemanticSearchResponse",
    "SemanticSearchResult",
    "TextFilters",
    "DateRange",
    "DocumentRef",
    "EmbeddingStatistics",
    "IndexPlan",
    "SearchFilters",
    "UpsertOptions",
    "VectorRecord",
    "VectorSearchOptions",
    "VectorSearchResult",
]
