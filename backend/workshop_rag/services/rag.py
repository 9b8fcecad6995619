"""Retrieval-augmented query orchestration.

Classes:
    RAGQueryEngine: Embeds a query, searches the vector store, ranks and packs a context window.
"""

from __future__ import annotations

import logging
from statistics import fmean
from typing import Any, Callable, Optional
from uuid import uuid4

from pydantic import ValidationError

from workshop_rag.core.config import Settings
from workshop_rag.core.errors import DocumentNotFound, InvalidInput
from workshop_rag.schemas.documents import DocumentType
from workshop_rag.schemas.rag import (
    ContextWindowConfig,
    ContextWindowSummary,
    PerformanceTimings,
    PromptFormatOptions,
    RAGAnalytics,
    RAGContextDocument,
    RAGFilters,
    RAGQueryOptions,
    RAGResult,
    RAGStatistics,
)
from workshop_rag.schemas.vector import DocumentRef, SearchFilters, VectorSearchOptions, VectorSearchResult
from workshop_rag.services.analytics import QueryAnalytics
from workshop_rag.services.context import (
    build_context_window,
    extract_source,
    rank_documents,
    render_augmented_prompt,
)
from workshop_rag.services.embeddings import EmbeddingGenerator
from workshop_rag.services.vector_store import VectorStore
from workshop_rag.utils.text import estimate_tokens
from workshop_rag.utils.timing import StageTimer, utcnow

_LOGGER = logging.getLogger(__name__)

_SIMILAR_DEFAULT_THRESHOLD = 0.5
_WORKSHOP_MAX_DOCUMENTS = 15
_WORKSHOP_THRESHOLD = 0.6
_WORKSHOP_DOCUMENT_TYPES = [
    DocumentType.QUESTIONNAIRE_RESPONSE.value,
    DocumentType.QUESTION.value,
    DocumentType.WORKSHOP_CONTENT.value,
    DocumentType.ANALYSIS_RESULT.value,
]


def to_search_filters(filters: RAGFilters) -> SearchFilters:
    metadata_equals: dict[str, Any] = {}
    if filters.workshop_id is not None:
        metadata_equals["workshop_id"] = filters.workshop_id
    if filters.user_id is not None:
        metadata_equals["user_id"] = filters.user_id
    return SearchFilters(
        document_types=filters.document_types,
        languages=filters.languages,
        embedding_models=filters.embedding_models,
        created_after=filters.date_range.start if filters.date_range else None,
        created_before=filters.date_range.end if filters.date_range else None,
        min_confidence=filters.min_confidence,
        exclude=list(filters.exclude),
        metadata_equals=metadata_equals,
    )


class RAGQueryEngine:
    def __init__(
        self,
        generator: EmbeddingGenerator,
        store: VectorStore,
        analytics: QueryAnalytics,
        settings: Settings,
        *,
        context_config: ContextWindowConfig | None = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self._generator = generator
        self._store = store
        self._analytics = analytics
        self._settings = settings
        self._clock = clock
        self._context_config = context_config or ContextWindowConfig(
            max_tokens=settings.rag_max_tokens,
            max_documents=settings.rag_max_documents,
            min_chunk_size=settings.rag_min_chunk_size,
            max_chunk_size=settings.rag_max_chunk_size,
            truncation_strategy=settings.rag_truncation_strategy,
        )

    @property
    def context_config(self) -> ContextWindowConfig:
        return self._context_config

    def update_context_config(self, **changes: Any) -> ContextWindowConfig:
        unknown = set(changes) - set(ContextWindowConfig.model_fields)
        if unknown:
            raise InvalidInput(f"Unknown context window settings: {', '.join(sorted(unknown))}")
        try:
            updated = ContextWindowConfig.model_validate({**self._context_config.model_dump(), **changes})
        except ValidationError as exc:
            raise InvalidInput(f"Invalid context window settings: {exc}") from exc
        self._context_config = updated
        _LOGGER.info("Context window configuration updated: %s", changes)
        return updated

    def _effective_config(self, opts: RAGQueryOptions) -> ContextWindowConfig:
        overrides: dict[str, Any] = {}
        if opts.context_window is not None:
            overrides["max_tokens"] = opts.context_window
        if opts.max_context_documents is not None:
            overrides["max_documents"] = opts.max_context_documents
        if not overrides:
            return self._context_config
        return self._context_config.model_copy(update=overrides)

    def _to_context_document(self, result: VectorSearchResult) -> RAGContextDocument:
        return RAGContextDocument(
            id=result.id,
            document_type=result.document_type,
            document_id=result.document_id,
            content=result.content,
            language=result.language,
            similarity=result.similarity,
            relevance=result.similarity,
            confidence=result.confidence,
            metadata=result.metadata,
            source=extract_source(result.document_type, result.metadata),
            created_at=result.created_at,
            token_count=estimate_tokens(result.content),
        )

    async def query(self, text: str, options: RAGQueryOptions | None = None) -> RAGResult:
        opts = options or RAGQueryOptions()
        config = self._effective_config(opts)
        timer = StageTimer()

        with timer.track("embedding"):
            embedding = await self._generator.generate(text, model=opts.model, detect_language=True)

        threshold = (
            opts.min_similarity_threshold
            if opts.min_similarity_threshold is not None
            else self._settings.default_similarity_threshold
        )
        search_options = VectorSearchOptions(
            limit=opts.search_limit or config.max_documents,
            threshold=threshold,
            metric=opts.metric,
            filters=to_search_filters(opts.filters),
            include_metadata=True,
        )
        with timer.track("search"):
            hits = await self._store.search(embedding.vector, search_options)

        ranked = rank_documents(
            (self._to_context_document(hit) for hit in hits),
            opts.ranking,
            now=self._clock(),
            decay_days=self._settings.recency_decay_days,
        )
        window = build_context_window(ranked, config)
        documents = window.documents
        if not opts.include_metadata:
            documents = [doc.model_copy(update={"metadata": None}) for doc in documents]

        average_similarity = fmean(hit.similarity for hit in hits) if hits else 0.0
        total_ms = timer.total_ms
        performance = PerformanceTimings(
            embedding_time=timer.duration("embedding"),
            search_time=timer.duration("search"),
            total_time=total_ms,
        )

        analytics: Optional[RAGAnalytics] = None
        tracking = opts.analytics
        if tracking.track_query or tracking.store_context_window:
            analytics = RAGAnalytics(user_id=tracking.user_id, session_id=tracking.session_id)
            if tracking.track_query:
                analytics.query_id = await self._analytics.record_query(
                    text,
                    query_vector=embedding.vector,
                    query_type=opts.type,
                    result_count=len(hits),
                    average_similarity=average_similarity,
                    latency_ms=total_ms,
                    filters=opts.filters.model_dump(mode="json", exclude_defaults=True),
                    metric=opts.metric or self._settings.default_similarity_metric,
                    threshold=threshold,
                    user_id=tracking.user_id,
                    session_id=tracking.session_id,
                )
            if tracking.store_context_window:
                session_id = tracking.session_id or uuid4().hex
                analytics.session_id = session_id
                analytics.context_window_id = await self._analytics.record_context_window(
                    session_id=session_id,
                    user_id=tracking.user_id,
                    query_type=opts.type,
                    query_text=text,
                    documents=documents,
                    token_count=window.token_count,
                    truncated=window.truncated,
                )

        _LOGGER.info(
            "RAG query (%s) returned %d context documents from %d results in %.1fms",
            opts.type,
            len(documents),
            len(hits),
            total_ms,
        )
        return RAGResult(
            query=text,
            query_embedding=embedding.vector,
            context_documents=documents,
            total_results=len(hits),
            average_similarity=average_similarity,
            context_window=ContextWindowSummary(
                size=window.token_count,
                documents=len(documents),
                truncated=window.truncated,
            ),
            performance=performance,
            analytics=analytics,
        )

    def generate_augmented_prompt(
        self,
        base_prompt: str,
        rag_result: RAGResult,
        options: PromptFormatOptions | None = None,
    ) -> str:
        return render_augmented_prompt(base_prompt, rag_result.context_documents, options)

    async def find_similar_documents(
        self,
        document_id: str,
        document_type: str,
        options: RAGQueryOptions | None = None,
    ) -> RAGResult:
        row = await self._store.get_document(document_type, document_id)
        if row is None:
            raise DocumentNotFound(document_type, document_id)

        opts = options or RAGQueryOptions()
        filters = opts.filters.model_copy(
            update={"exclude": [*opts.filters.exclude, DocumentRef(document_type=document_type, document_id=document_id)]}
        )
        opts = opts.model_copy(
            update={
                "max_context_documents": opts.max_context_documents or 10,
                "min_similarity_threshold": (
                    opts.min_similarity_threshold
                    if opts.min_similarity_threshold is not None
                    else _SIMILAR_DEFAULT_THRESHOLD
                ),
                "model": opts.model or row.embedding_model,
                "filters": filters,
            }
        )
        return await self.query(row.content, opts)

    async def get_context_for_workshop(
        self,
        workshop_id: str,
        query: str,
        options: RAGQueryOptions | None = None,
    ) -> RAGResult:
        opts = options or RAGQueryOptions()
        filters = opts.filters.model_copy(
            update={
                "workshop_id": workshop_id,
                "document_types": opts.filters.document_types or list(_WORKSHOP_DOCUMENT_TYPES),
            }
        )
        opts = opts.model_copy(
            update={
                "type": "context_retrieval",
                "max_context_documents": opts.max_context_documents or _WORKSHOP_MAX_DOCUMENTS,
                "min_similarity_threshold": (
                    opts.min_similarity_threshold
                    if opts.min_similarity_threshold is not None
                    else _WORKSHOP_THRESHOLD
                ),
                "filters": filters,
            }
        )
        return await self.query(query, opts)

    async def get_statistics(self) -> RAGStatistics:
        return await self._analytics.statistics()
