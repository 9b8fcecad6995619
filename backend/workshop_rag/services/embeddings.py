"""Embedding generation with caching, batching and retries.

Classes:
    EmbeddingGenerator: Resolves models, consults the cache tiers, calls providers and scores results.

Functions:
    calculate_confidence(vector, text, language, descriptor): Best-effort quality signal for an embedding.
"""

from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from typing import Iterable, Mapping, Optional, Sequence

from workshop_rag.core.config import Settings
from workshop_rag.core.errors import (
    EmbeddingGenerationFailed,
    InvalidInput,
    ProviderError,
    ProviderTimeout,
    UnsupportedModel,
)
from workshop_rag.schemas.embedding import (
    BatchEmbeddingOptions,
    CostDetail,
    CostEstimate,
    EmbeddingHealth,
    EmbeddingResult,
    LanguageDetection,
)
from workshop_rag.services.cache import (
    EmbeddingCacheBackend,
    EmbeddingCacheEntry,
    SqlEmbeddingCache,
    cache_key,
)
from workshop_rag.services.language import DEFAULT_LANGUAGE, detect_language, preprocess_text
from workshop_rag.services.metrics import PerformanceMonitor
from workshop_rag.services.providers import EmbeddingProvider, ProviderEmbedding
from workshop_rag.services.registry import EmbeddingModelDescriptor, ModelRegistry
from workshop_rag.services.retry import RetryPolicy, SleepFn, retry_async
from workshop_rag.utils.text import CHARS_PER_TOKEN, content_hash, estimate_tokens
from workshop_rag.utils.timing import elapsed_ms, utcnow
from workshop_rag.utils.vectors import vector_variance

_LOGGER = logging.getLogger(__name__)

_BASE_CONFIDENCE = 0.7
_CONFIDENCE_STEP = 0.1
_LONG_TEXT_CHARS = 100
_VARIANCE_THRESHOLD = 0.1


def calculate_confidence(
    vector: Sequence[float],
    text: str,
    language: Optional[str],
    descriptor: EmbeddingModelDescriptor,
) -> float:
    confidence = _BASE_CONFIDENCE
    if len(text) > _LONG_TEXT_CHARS:
        confidence += _CONFIDENCE_STEP
    if vector_variance(vector) > _VARIANCE_THRESHOLD:
        confidence += _CONFIDENCE_STEP
    if descriptor.supports_language(language):
        confidence += _CONFIDENCE_STEP
    return min(round(confidence, 6), 1.0)


def _apportion_tokens(texts: Sequence[str], tokens_used: int) -> list[int]:
    """Split a batch-level token count across items by character share."""

    if not texts:
        return []
    lengths = [max(len(text), 1) for text in texts]
    total = sum(lengths)
    allocated = [tokens_used * length // total for length in lengths]
    remainder = tokens_used - sum(allocated)
    if remainder:
        longest = max(range(len(lengths)), key=lengths.__getitem__)
        allocated[longest] += remainder
    return allocated


class EmbeddingGenerator:
    def __init__(
        self,
        *,
        registry: ModelRegistry,
        providers: Mapping[str, EmbeddingProvider],
        cache: EmbeddingCacheBackend,
        settings: Settings,
        persistent_cache: SqlEmbeddingCache | None = None,
        monitor: PerformanceMonitor | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._providers = dict(providers)
        self._cache = cache
        self._persistent = persistent_cache
        self._monitor = monitor
        self._settings = settings
        self._sleep = sleep
        self.default_model = settings.default_embedding_model

    @property
    def cache(self) -> EmbeddingCacheBackend:
        return self._cache

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    def resolve_model(self, model: str | None) -> EmbeddingModelDescriptor:
        return self._registry.require(model or self.default_model)

    def detect_language(self, text: str) -> LanguageDetection:
        return detect_language(text)

    def _resolve_language(self, text: str, language: str | None, detect: bool) -> str:
        if language:
            return language
        if detect:
            return detect_language(text).language
        return DEFAULT_LANGUAGE

    def _provider_for(self, descriptor: EmbeddingModelDescriptor) -> EmbeddingProvider:
        provider = self._providers.get(descriptor.provider)
        if provider is None:
            raise UnsupportedModel(descriptor.name)
        return provider

    def _retry_policy(self, max_retries: int | None = None, retry_delay: float | None = None) -> RetryPolicy:
        return RetryPolicy.from_retries(
            self._settings.embedding_max_retries if max_retries is None else max_retries,
            self._settings.embedding_retry_delay if retry_delay is None else retry_delay,
            max_delay=self._settings.retry_max_delay,
            jitter=self._settings.retry_jitter,
        )

    def _warn_if_oversized(self, text: str, descriptor: EmbeddingModelDescriptor) -> None:
        limit = descriptor.max_tokens * CHARS_PER_TOKEN
        if len(text) > limit:
            _LOGGER.warning(
                "Text length (%d) exceeds model %s max input (%d characters)",
                len(text),
                descriptor.name,
                limit,
            )

    async def generate(
        self,
        text: str,
        *,
        model: str | None = None,
        language: str | None = None,
        detect_language: bool = True,
        skip_cache: bool = False,
    ) -> EmbeddingResult:
        descriptor = self.resolve_model(model)
        if not text or not text.strip():
            raise InvalidInput("Cannot generate embedding for empty text")

        resolved_language = self._resolve_language(text, language, detect_language)
        self._warn_if_oversized(text, descriptor)
        policy = self._retry_policy()
        operation = partial(
            self._process_batch,
            [text],
            [resolved_language],
            descriptor,
            timeout=self._settings.embedding_timeout,
            skip_cache=skip_cache,
            explicit_language=language is not None,
        )
        start = time.perf_counter()
        try:
            results = await retry_async(
                operation,
                policy,
                sleep=self._sleep,
                description=f"Embedding with {descriptor.name}",
            )
        except ProviderError as exc:
            self._record_failure(start, 1)
            _LOGGER.error("Failed to generate embedding with model %s: %s", descriptor.name, exc)
            raise EmbeddingGenerationFailed(
                f"Embedding generation failed for model {descriptor.name}: {exc}",
                item_count=1,
            ) from exc
        except EmbeddingGenerationFailed:
            self._record_failure(start, 1)
            raise
        self._record_success(start, results)
        return results[0]

    async def generate_batch(
        self,
        texts: Iterable[str],
        options: BatchEmbeddingOptions | None = None,
    ) -> list[EmbeddingResult]:
        opts = options or BatchEmbeddingOptions()
        descriptor = self.resolve_model(opts.model)
        items = list(texts)
        if not items:
            return []
        for index, text in enumerate(items):
            if not text or not text.strip():
                raise InvalidInput(f"Cannot generate embedding for empty text at index {index}")
            self._warn_if_oversized(text, descriptor)

        batch_size = opts.batch_size or self._settings.embedding_batch_size
        timeout = opts.timeout or self._settings.embedding_timeout
        policy = self._retry_policy(opts.max_retries, opts.retry_delay)
        total = len(items)
        batches = [items[start : start + batch_size] for start in range(0, total, batch_size)]

        start = time.perf_counter()
        results: list[EmbeddingResult] = []
        for batch_index, batch in enumerate(batches):
            languages = [self._resolve_language(text, opts.language, opts.detect_language) for text in batch]
            operation = partial(
                self._process_batch,
                batch,
                languages,
                descriptor,
                timeout=timeout,
                skip_cache=opts.skip_cache,
                batch_index=batch_index,
                explicit_language=opts.language is not None,
            )
            try:
                batch_results = await retry_async(
                    operation,
                    policy,
                    sleep=self._sleep,
                    description=f"Embedding batch {batch_index + 1}/{len(batches)}",
                )
            except ProviderError as exc:
                self._record_failure(start, total)
                _LOGGER.error(
                    "Embedding batch %d failed after %d retries: %s",
                    batch_index + 1,
                    policy.max_retries,
                    exc,
                )
                raise EmbeddingGenerationFailed(
                    f"Embedding batch {batch_index} failed after {policy.max_retries} retries: {exc}",
                    batch_index=batch_index,
                    item_count=len(batch),
                    partial_results=results,
                ) from exc
            except EmbeddingGenerationFailed as exc:
                self._record_failure(start, total)
                if exc.batch_index is not None:
                    raise
                _LOGGER.error("Embedding batch %d failed: %s", batch_index + 1, exc)
                raise EmbeddingGenerationFailed(
                    f"Embedding batch {batch_index} failed: {exc}",
                    batch_index=batch_index,
                    item_count=len(batch),
                    partial_results=results,
                ) from exc

            results.extend(batch_results)
            if opts.on_progress is not None:
                opts.on_progress(len(results), total)
            if batch_index < len(batches) - 1 and self._settings.inter_batch_delay > 0:
                await self._sleep(self._settings.inter_batch_delay)

        self._cache.evict()
        self._record_success(start, results)
        _LOGGER.info("Generated %d embeddings with %s in %d batches", total, descriptor.name, len(batches))
        return results

    def _record_success(self, start: float, results: Sequence[EmbeddingResult]) -> None:
        if self._monitor is None:
            return
        self._monitor.record_embedding(
            elapsed_ms(start),
            success=True,
            items=len(results),
            cached=sum(1 for result in results if result.cached),
            tokens=sum(result.tokens for result in results if not result.cached),
            cost=sum(result.cost for result in results if not result.cached),
        )

    def _record_failure(self, start: float, items: int) -> None:
        if self._monitor is not None:
            self._monitor.record_embedding(elapsed_ms(start), success=False, items=items)

    async def _process_batch(
        self,
        batch: Sequence[str],
        languages: Sequence[str],
        descriptor: EmbeddingModelDescriptor,
        *,
        timeout: float,
        skip_cache: bool,
        batch_index: int | None = None,
        explicit_language: bool = False,
    ) -> list[EmbeddingResult]:
        start = time.perf_counter()
        results: list[Optional[EmbeddingResult]] = [None] * len(batch)
        keys = [cache_key(text, descriptor.name) for text in batch]

        if not skip_cache:
            for index, key in enumerate(keys):
                entry = self._cache.get(key, descriptor.name)
                if entry is not None:
                    override = languages[index] if explicit_language else None
                    results[index] = self._result_from_entry(entry, start, override)
            await self._load_persistent(batch, languages, keys, results, descriptor, start, explicit_language)

        # one provider input per distinct miss key
        pending: dict[str, list[int]] = {}
        for index, result in enumerate(results):
            if result is None:
                pending.setdefault(keys[index], []).append(index)

        if pending:
            primary = [indices[0] for indices in pending.values()]
            texts = [batch[index] for index in primary]
            embedding = await self._call_provider(texts, descriptor, timeout)
            vectors = self._validate_vectors(embedding, len(texts), descriptor, batch_index)
            token_shares = _apportion_tokens(texts, embedding.tokens_used)
            processing_time = elapsed_ms(start)
            fresh: dict[str, EmbeddingCacheEntry] = {}
            now = utcnow()
            for index, vector, tokens in zip(primary, vectors, token_shares):
                language = languages[index]
                result = EmbeddingResult(
                    vector=vector,
                    model=descriptor.name,
                    dimensions=descriptor.dimensions,
                    tokens=tokens,
                    cost=descriptor.cost_for(tokens),
                    processing_time=processing_time,
                    confidence=calculate_confidence(vector, batch[index], language, descriptor),
                    language=language,
                )
                for target in pending[keys[index]]:
                    results[target] = result if target == index else result.model_copy(
                        update={"language": languages[target]}
                    )
                entry = EmbeddingCacheEntry(
                    key=keys[index],
                    model=descriptor.name,
                    vector=list(result.vector),
                    tokens=result.tokens,
                    cost=result.cost,
                    confidence=result.confidence,
                    language=language,
                    created_at=now,
                    last_accessed_at=now,
                )
                self._cache.put(entry)
                fresh[content_hash(batch[index])] = entry
            if self._persistent is not None:
                await self._persistent.put_many(fresh, provider=embedding.provider)

        return [result for result in results if result is not None]

    async def _load_persistent(
        self,
        batch: Sequence[str],
        languages: Sequence[str],
        keys: Sequence[str],
        results: list[Optional[EmbeddingResult]],
        descriptor: EmbeddingModelDescriptor,
        start: float,
        explicit_language: bool,
    ) -> None:
        if self._persistent is None:
            return
        missing = {content_hash(batch[i]): i for i, result in enumerate(results) if result is None}
        if not missing:
            return
        found = await self._persistent.get_many(missing.keys(), descriptor.name)
        for entry in found.values():
            if len(entry.vector) != descriptor.dimensions:
                continue
            self._cache.put(entry)
            for index, result in enumerate(results):
                if result is None and keys[index] == entry.key:
                    override = languages[index] if explicit_language else None
                    results[index] = self._result_from_entry(entry, start, override)

    def _result_from_entry(
        self,
        entry: EmbeddingCacheEntry,
        start: float,
        language: str | None,
    ) -> EmbeddingResult:
        return EmbeddingResult(
            vector=entry.vector,
            model=entry.model,
            dimensions=len(entry.vector),
            tokens=entry.tokens,
            cost=entry.cost,
            processing_time=elapsed_ms(start),
            confidence=entry.confidence,
            language=language or entry.language,
            cached=True,
        )

    async def _call_provider(
        self,
        texts: Sequence[str],
        descriptor: EmbeddingModelDescriptor,
        timeout: float,
    ) -> ProviderEmbedding:
        provider = self._provider_for(descriptor)
        prepared = [preprocess_text(text) for text in texts]
        try:
            return await asyncio.wait_for(provider.embed(prepared, descriptor), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(timeout) from exc

    def _validate_vectors(
        self,
        embedding: ProviderEmbedding,
        expected: int,
        descriptor: EmbeddingModelDescriptor,
        batch_index: int | None,
    ) -> list[list[float]]:
        vectors = embedding.vectors
        if len(vectors) != expected:
            raise EmbeddingGenerationFailed(
                f"Provider returned {len(vectors)} vectors for {expected} inputs",
                batch_index=batch_index,
                item_count=expected,
            )
        for vector in vectors:
            if len(vector) != descriptor.dimensions:
                raise EmbeddingGenerationFailed(
                    f"Provider returned {len(vector)}-dimensional vector for {descriptor.name}, "
                    f"expected {descriptor.dimensions}",
                    batch_index=batch_index,
                    item_count=expected,
                )
        return [list(vector) for vector in vectors]

    def calculate_cost(self, texts: Iterable[str], model: str | None = None) -> CostEstimate:
        descriptor = self.resolve_model(model)
        details: list[CostDetail] = []
        total_tokens = 0
        total_cost = 0.0
        for text in texts:
            token_count = estimate_tokens(text)
            cost = descriptor.cost_for(token_count)
            total_tokens += token_count
            total_cost += cost
            preview = text[:50] + ("..." if len(text) > 50 else "")
            details.append(CostDetail(text=preview, token_count=token_count, cost=cost))
        return CostEstimate(tokens=total_tokens, cost=total_cost, details=details)

    async def health_check(self) -> EmbeddingHealth:
        try:
            provider_ok = await self._provider_for(self.resolve_model(None)).health_check()
        except Exception:
            _LOGGER.warning("Embedding provider health check failed", exc_info=True)
            provider_ok = False
        return EmbeddingHealth(
            provider=provider_ok,
            cache_size=len(self._cache),
            cache_max_size=self._cache.max_size,
            models=self._registry.names(),
        )

    def clear_cache(self) -> None:
        self._cache.clear()
        _LOGGER.info("Embedding cache cleared")
