"""Semantic search facade over the embedding generator and vector store.

Classes:
    SemanticSearchService: Query-type dispatch, text filters, facets, highlights, pagination and suggestions.

Functions:
    date_bucket(created_at, now): Facet label for a document's age.
    keyword_scores(query, documents): TF-IDF cosine between a keyword query and candidate texts.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import datetime
from statistics import fmean
from typing import Any, Callable, Iterable, Optional, Sequence

import numpy as np
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import linear_kernel

from workshop_rag.core.config import Settings
from workshop_rag.core.errors import InvalidInput
from workshop_rag.schemas.rag import PopularQuery
from workshop_rag.schemas.search import (
    AdvancedSearchFilters,
    PaginationInfo,
    SearchAnalyticsSummary,
    SearchFacets,
    SearchHistoryEntry,
    SearchPagination,
    SearchQueryType,
    SearchTrend,
    SemanticSearchOptions,
    SemanticSearchResponse,
    SemanticSearchResult,
    TextFilters,
)
from workshop_rag.schemas.vector import SearchFilters, VectorSearchOptions, VectorSearchResult
from workshop_rag.services.analytics import QueryAnalytics
from workshop_rag.services.context import compute_relevance
from workshop_rag.services.embeddings import EmbeddingGenerator
from workshop_rag.services.vector_store import VectorStore
from workshop_rag.utils.text import extract_keywords, split_sentences, tokenize_words
from workshop_rag.utils.timing import as_utc, utcnow

_LOGGER = logging.getLogger(__name__)

_QUERY_TYPE_TO_RAG = {
    "semantic": "semantic_search",
    "multilingual": "semantic_search",
    "hybrid": "context_retrieval",
    "filtered": "document_analysis",
}
_DATE_BUCKETS = ((7, "Last 7 days"), (30, "Last 30 days"), (90, "Last 90 days"))
_MAX_HIGHLIGHTS = 3
_MIN_HIGHLIGHT_CHARS = 20
_MIN_QUERY_TERM_CHARS = 3
_SUGGESTION_SOURCE_RESULTS = 5
_MAX_RESULT_SUGGESTIONS = 5


def date_bucket(created_at: datetime, now: datetime) -> str:
    age_days = (as_utc(now) - as_utc(created_at)).days
    for days, label in _DATE_BUCKETS:
        if age_days < days:
            return label
    return "Older"


def keyword_scores(query: str, documents: Sequence[str]) -> np.ndarray:
    """Cosine similarity between the TF-IDF vectors of ``query`` and each document."""

    if not documents or not query.strip():
        return np.zeros(len(documents), dtype=np.float64)
    vectorizer = TfidfVectorizer(ngram_range=(1, 2), min_df=1, norm="l2", sublinear_tf=True)
    try:
        matrix = vectorizer.fit_transform(documents)
    except ValueError:
        # every document reduced to an empty vocabulary
        return np.zeros(len(documents), dtype=np.float64)
    query_row = vectorizer.transform([query])
    return linear_kernel(query_row, matrix).ravel()


def _passes_text_filters(content: str, text_filters: TextFilters | None) -> bool:
    if text_filters is None or text_filters.is_empty():
        return True
    lowered = content.casefold()
    words = set(tokenize_words(content))
    for term in text_filters.include_terms:
        if term.casefold() not in words and term.casefold() not in lowered:
            return False
    for term in text_filters.exclude_terms:
        if term.casefold() in words:
            return False
    if text_filters.exact_phrase and text_filters.exact_phrase.casefold() not in lowered:
        return False
    return True


def _highlights(content: str, query: str) -> list[str]:
    terms = {term for term in tokenize_words(query) if len(term) >= _MIN_QUERY_TERM_CHARS}
    matched: list[str] = []
    others: list[str] = []
    for sentence in split_sentences(content):
        if terms & set(tokenize_words(sentence)):
            matched.append(sentence)
        elif len(sentence) > _MIN_HIGHLIGHT_CHARS:
            others.append(sentence)
    return (matched + others)[:_MAX_HIGHLIGHTS]


class SemanticSearchService:
    def __init__(
        self,
        generator: EmbeddingGenerator,
        store: VectorStore,
        analytics: QueryAnalytics,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._generator = generator
        self._store = store
        self._analytics = analytics
        self._settings = settings
        self._clock = clock

    def _store_filters(self, filters: AdvancedSearchFilters) -> SearchFilters:
        metadata_equals: dict[str, Any] = dict(filters.metadata_filters)
        if filters.workshop_id is not None:
            metadata_equals["workshop_id"] = filters.workshop_id
        if filters.user_id is not None:
            metadata_equals["user_id"] = filters.user_id
        return SearchFilters(
            document_types=filters.document_types,
            languages=filters.languages,
            created_after=filters.date_range.start if filters.date_range else None,
            created_before=filters.date_range.end if filters.date_range else None,
            min_confidence=filters.confidence_range.min if filters.confidence_range else None,
            metadata_equals=metadata_equals,
        )

    def _post_filter(
        self,
        hits: Iterable[VectorSearchResult],
        filters: AdvancedSearchFilters,
    ) -> list[VectorSearchResult]:
        upper = filters.confidence_range.max if filters.confidence_range else None
        kept = []
        for hit in hits:
            if upper is not None and hit.confidence is not None and hit.confidence > upper:
                continue
            if not _passes_text_filters(hit.content, filters.text_filters):
                continue
            kept.append(hit)
        return kept

    def _score(
        self,
        query: str,
        pool: Sequence[VectorSearchResult],
        opts: SemanticSearchOptions,
        detected_language: str,
        now: datetime,
    ) -> list[float]:
        if opts.type == "hybrid":
            keywords = keyword_scores(opts.keyword_query or query, [hit.content for hit in pool])
            return [
                opts.semantic_weight * hit.similarity + opts.keyword_weight * float(score)
                for hit, score in zip(pool, keywords)
            ]

        if opts.ranking is not None:
            scores = [
                compute_relevance(
                    hit.similarity,
                    hit.created_at,
                    hit.confidence,
                    opts.ranking,
                    now=now,
                    decay_days=self._settings.recency_decay_days,
                )
                for hit in pool
            ]
        else:
            scores = [hit.similarity for hit in pool]

        if opts.type == "multilingual":
            boosted = {detected_language, *opts.preferred_languages}
            boost = self._settings.multilingual_language_boost
            scores = [score + boost if hit.language in boosted else score for hit, score in zip(pool, scores)]
        return scores

    @staticmethod
    def _sort(results: list[SemanticSearchResult], pagination: SearchPagination) -> list[SemanticSearchResult]:
        descending = pagination.sort_order == "desc"
        ordered = sorted(results, key=lambda item: item.created_at, reverse=True)
        if pagination.sort_by == "date":
            ordered.sort(key=lambda item: item.created_at, reverse=descending)
        elif pagination.sort_by == "confidence":
            ordered.sort(key=lambda item: item.confidence if item.confidence is not None else 0.0, reverse=descending)
        else:
            ordered.sort(key=lambda item: item.relevance, reverse=descending)
        return ordered

    @staticmethod
    def _facets(pool: Sequence[VectorSearchResult], now: datetime) -> SearchFacets:
        return SearchFacets(
            document_types=dict(Counter(hit.document_type for hit in pool)),
            languages=dict(Counter(hit.language for hit in pool)),
            date_ranges=dict(Counter(date_bucket(hit.created_at, now) for hit in pool)),
        )

    @staticmethod
    def _result_suggestions(results: Sequence[SemanticSearchResult]) -> list[str]:
        suggestions: list[str] = []
        for result in results[:_SUGGESTION_SOURCE_RESULTS]:
            for keyword in extract_keywords(result.content):
                if keyword not in suggestions:
                    suggestions.append(keyword)
        return suggestions[:_MAX_RESULT_SUGGESTIONS]

    async def search(self, query: str, options: SemanticSearchOptions | None = None) -> SemanticSearchResponse:
        opts = options or SemanticSearchOptions()
        if not query or not query.strip():
            raise InvalidInput("Search query must not be empty")
        if opts.type == "filtered" and opts.filters.is_empty():
            raise InvalidInput("Filtered search requires at least one filter")

        start = time.perf_counter()
        now = self._clock()
        detected = self._generator.detect_language(query)
        embedding = await self._generator.generate(query, model=opts.model, language=detected.language)

        threshold = opts.threshold if opts.threshold is not None else self._settings.search_similarity_threshold
        hits = await self._store.search(
            embedding.vector,
            VectorSearchOptions(
                limit=self._settings.search_candidate_pool,
                threshold=threshold,
                filters=self._store_filters(opts.filters),
                include_metadata=True,
            ),
        )
        pool = self._post_filter(hits, opts.filters)
        scores = self._score(query, pool, opts, detected.language, now)

        results = [
            SemanticSearchResult(
                id=hit.id,
                document_id=hit.document_id,
                document_type=hit.document_type,
                content=hit.content,
                language=hit.language,
                similarity=hit.similarity,
                relevance=score,
                confidence=hit.confidence,
                highlights=_highlights(hit.content, query) if opts.include_highlights else [],
                metadata=hit.metadata,
                created_at=hit.created_at,
            )
            for hit, score in zip(pool, scores)
        ]
        ordered = self._sort(results, opts.pagination)

        limit = opts.pagination.limit or self._settings.search_default_limit
        offset = opts.pagination.offset
        page = ordered[offset : offset + limit]
        total = len(ordered)
        search_time = round((time.perf_counter() - start) * 1000.0, 3)
        average_similarity = fmean(hit.similarity for hit in pool) if pool else 0.0

        analytics: Optional[SearchAnalyticsSummary] = None
        if opts.track_analytics:
            query_id = await self._analytics.record_query(
                query,
                query_vector=embedding.vector,
                query_type=_QUERY_TYPE_TO_RAG[opts.type],
                result_count=total,
                average_similarity=average_similarity,
                latency_ms=search_time,
                filters=opts.filters.model_dump(mode="json", exclude_defaults=True),
                metric=self._settings.default_similarity_metric,
                threshold=threshold,
                user_id=opts.user_id,
                session_id=opts.session_id,
            )
            analytics = SearchAnalyticsSummary(
                query_id=query_id,
                query_text=query,
                result_count=len(page),
                average_similarity=average_similarity,
                search_time=search_time,
                user_id=opts.user_id,
                session_id=opts.session_id,
                timestamp=now,
            )

        _LOGGER.info(
            "Semantic search (%s) matched %d documents, returning %d in %.1fms",
            opts.type,
            total,
            len(page),
            search_time,
        )
        return SemanticSearchResponse(
            query=query,
            query_type=opts.type,
            detected_language=detected.language,
            results=page,
            total_results=total,
            search_time=search_time,
            pagination=PaginationInfo(limit=limit, offset=offset, has_more=offset + len(page) < total),
            facets=self._facets(pool, now) if opts.include_facets else None,
            suggestions=self._result_suggestions(ordered) if opts.include_suggestions else None,
            analytics=analytics,
        )

    async def search_by_document_type(
        self,
        query: str,
        document_type: str,
        options: SemanticSearchOptions | None = None,
    ) -> SemanticSearchResponse:
        opts = options or SemanticSearchOptions()
        filters = opts.filters.model_copy(update={"document_types": [document_type]})
        return await self.search(query, opts.model_copy(update={"filters": filters}))

    async def multilingual_search(
        self,
        query: str,
        target_languages: Sequence[str] = ("en", "pl"),
        options: SemanticSearchOptions | None = None,
    ) -> SemanticSearchResponse:
        opts = options or SemanticSearchOptions()
        update = {"type": "multilingual", "preferred_languages": list(target_languages), "include_facets": True}
        return await self.search(query, opts.model_copy(update=update))

    async def hybrid_search(
        self,
        semantic_query: str,
        keyword_query: str | None = None,
        *,
        semantic_weight: float = 0.7,
        keyword_weight: float = 0.3,
        options: SemanticSearchOptions | None = None,
    ) -> SemanticSearchResponse:
        if semantic_weight < 0 or keyword_weight < 0:
            raise InvalidInput("Hybrid search weights must be non-negative")
        opts = options or SemanticSearchOptions()
        update = {
            "type": "hybrid",
            "keyword_query": keyword_query,
            "semantic_weight": semantic_weight,
            "keyword_weight": keyword_weight,
        }
        return await self.search(semantic_query, opts.model_copy(update=update))

    async def get_search_suggestions(
        self,
        partial: str,
        max_suggestions: int = 10,
        user_id: str | None = None,
    ) -> list[str]:
        return await self._analytics.suggestions(partial, limit=max_suggestions, user_id=user_id)

    async def get_user_search_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SearchHistoryEntry]:
        return await self._analytics.history(user_id, limit=limit, offset=offset)

    async def get_search_trends(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 20,
        user_id: str | None = None,
    ) -> list[SearchTrend]:
        try:
            return await self._analytics.trends(start=start, end=end, limit=limit, user_id=user_id)
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc

    async def get_popular_queries(self, limit: int = 10) -> list[PopularQuery]:
        return await self._analytics.popular_queries(limit)
