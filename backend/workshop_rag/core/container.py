"""Composition root for the RAG core.

Classes:
    RagCore: Holds the wired service objects and exposes the library's public operations.

Functions:
    build_rag_core(settings, ...): Build engine, caches, providers and services from settings.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterable, Callable, Iterable, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from workshop_rag.core.config import Settings, get_settings
from workshop_rag.db.session import create_engine, create_session_factory, init_db
from workshop_rag.schemas.documents import DocumentChange
from workshop_rag.schemas.embedding import BatchEmbeddingOptions, CostEstimate, EmbeddingResult
from workshop_rag.schemas.metrics import IndexHealth, IndexOptimization, PerformanceReport
from workshop_rag.schemas.rag import PromptFormatOptions, RAGQueryOptions, RAGResult, RAGStatistics
from workshop_rag.schemas.search import SemanticSearchOptions, SemanticSearchResponse
from workshop_rag.schemas.vector import (
    EmbeddingStatistics,
    UpsertOptions,
    VectorSearchOptions,
    VectorSearchResult,
)
from workshop_rag.services.analytics import QueryAnalytics
from workshop_rag.services.cache import EmbeddingCacheBackend, SqlEmbeddingCache, create_cache
from workshop_rag.services.embeddings import EmbeddingGenerator
from workshop_rag.services.indexing import IndexPolicy
from workshop_rag.services.ingestion import DocumentIndexer, IngestionSummary
from workshop_rag.services.metrics import PerformanceMonitor
from workshop_rag.services.providers import EmbeddingProvider, HashingEmbeddingProvider, OpenAIEmbeddingProvider
from workshop_rag.services.rag import RAGQueryEngine
from workshop_rag.services.registry import ModelRegistry
from workshop_rag.services.retry import SleepFn
from workshop_rag.services.search import SemanticSearchService
from workshop_rag.services.vector_store import VectorStore
from workshop_rag.utils.timing import utcnow

_LOGGER = logging.getLogger(__name__)


class RagCore:
    def __init__(
        self,
        *,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker,
        registry: ModelRegistry,
        cache: EmbeddingCacheBackend,
        generator: EmbeddingGenerator,
        store: VectorStore,
        analytics: QueryAnalytics,
        rag: RAGQueryEngine,
        search: SemanticSearchService,
        indexer: DocumentIndexer,
        monitor: PerformanceMonitor,
        owns_engine: bool = True,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.registry = registry
        self.cache = cache
        self.generator = generator
        self.store = store
        self.analytics = analytics
        self.rag = rag
        self.search = search
        self.indexer = indexer
        self.monitor = monitor
        self._owns_engine = owns_engine
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await init_db(self.engine)
        self._initialized = True
        _LOGGER.info("RAG core initialised against %s", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self._owns_engine:
            await self.engine.dispose()
        self._initialized = False

    async def __aenter__(self) -> "RagCore":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # embeddings
    async def generate_embedding(
        self,
        text: str,
        *,
        model: str | None = None,
        language: str | None = None,
        detect_language: bool = True,
    ) -> EmbeddingResult:
        return await self.generator.generate(text, model=model, language=language, detect_language=detect_language)

    async def generate_batch_embeddings(
        self,
        texts: Iterable[str],
        options: BatchEmbeddingOptions | None = None,
    ) -> list[EmbeddingResult]:
        return await self.generator.generate_batch(texts, options)

    def calculate_cost(self, texts: Iterable[str], model: str | None = None) -> CostEstimate:
        return self.generator.calculate_cost(texts, model)

    # storage
    async def store_document_embeddings(
        self,
        documents: Iterable[DocumentChange],
        options: BatchEmbeddingOptions | None = None,
        upsert_options: UpsertOptions | None = None,
    ) -> int:
        return await self.indexer.store_document_embeddings(documents, options, upsert_options)

    async def ingest_changes(
        self,
        feed: Iterable[DocumentChange] | AsyncIterable[DocumentChange],
        options: BatchEmbeddingOptions | None = None,
        *,
        batch_size: int | None = None,
    ) -> IngestionSummary:
        return await self.indexer.consume(feed, options, batch_size=batch_size)

    async def search_similar(
        self,
        query_vector: Sequence[float],
        options: VectorSearchOptions | None = None,
    ) -> list[VectorSearchResult]:
        return await self.store.search(query_vector, options)

    async def get_statistics(self) -> EmbeddingStatistics:
        return await self.store.get_statistics()

    async def get_rag_statistics(self) -> RAGStatistics:
        return await self.rag.get_statistics()

    async def health_check(self) -> dict[str, bool]:
        embedding = await self.generator.health_check()
        return {
            "embedding_provider": embedding.provider,
            "vector_store": await self.store.health_check(),
            "analytics": await self.analytics.health_check(),
        }

    # monitoring
    async def get_index_health(self) -> list[IndexHealth]:
        return await self.store.index_health()

    async def optimize_indexes(self, *, apply: bool = True) -> IndexOptimization:
        return await self.store.optimize_indexes(apply=apply)

    async def get_performance_report(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> PerformanceReport:
        return self.monitor.report(start, end, indexes=await self.store.index_health())

    # retrieval
    async def rag_query(self, text: str, options: RAGQueryOptions | None = None) -> RAGResult:
        return await self.rag.query(text, options)

    def generate_augmented_prompt(
        self,
        base_prompt: str,
        rag_result: RAGResult,
        options: PromptFormatOptions | None = None,
    ) -> str:
        return self.rag.generate_augmented_prompt(base_prompt, rag_result, options)

    async def find_similar_documents(
        self,
        document_id: str,
        document_type: str,
        options: RAGQueryOptions | None = None,
    ) -> RAGResult:
        return await self.rag.find_similar_documents(document_id, document_type, options)

    async def semantic_search(
        self,
        query: str,
        options: SemanticSearchOptions | None = None,
    ) -> SemanticSearchResponse:
        return await self.search.search(query, options)

    async def get_search_suggestions(
        self,
        partial: str,
        max_suggestions: int = 10,
        user_id: str | None = None,
    ) -> list[str]:
        return await self.search.get_search_suggestions(partial, max_suggestions, user_id)


def default_providers(settings: Settings) -> dict[str, EmbeddingProvider]:
    return {
        "openai": OpenAIEmbeddingProvider(settings=settings),
        "local": HashingEmbeddingProvider(),
    }


def build_rag_core(
    settings: Settings | None = None,
    *,
    providers: Optional[Mapping[str, EmbeddingProvider]] = None,
    engine: AsyncEngine | None = None,
    registry: ModelRegistry | None = None,
    index_policy: IndexPolicy | None = None,
    sleep: SleepFn = asyncio.sleep,
    clock: Callable[[], datetime] = utcnow,
) -> RagCore:
    settings = settings or get_settings()
    owns_engine = engine is None
    engine = engine or create_engine(settings)
    session_factory = create_session_factory(engine)
    registry = registry or ModelRegistry()
    cache = create_cache(settings, clock=clock)
    monitor = PerformanceMonitor.from_settings(settings, clock=clock)
    persistent = (
        SqlEmbeddingCache(
            session_factory,
            preproc_version=settings.embedding_preproc_version,
            ttl_seconds=settings.embedding_cache_ttl_seconds,
        )
        if settings.persistent_embedding_cache
        else None
    )
    generator = EmbeddingGenerator(
        registry=registry,
        providers=providers if providers is not None else default_providers(settings),
        cache=cache,
        settings=settings,
        persistent_cache=persistent,
        monitor=monitor,
        sleep=sleep,
    )
    store = VectorStore(
        session_factory,
        registry=registry,
        settings=settings,
        policy=index_policy,
        monitor=monitor,
        sleep=sleep,
    )
    analytics = QueryAnalytics(session_factory)
    return RagCore(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        cache=cache,
        generator=generator,
        store=store,
        analytics=analytics,
        rag=RAGQueryEngine(generator, store, analytics, settings, clock=clock),
        search=SemanticSearchService(generator, store, analytics, settings, clock=clock),
        indexer=DocumentIndexer(generator, store, settings),
        monitor=monitor,
        owns_engine=owns_engine,
    )
