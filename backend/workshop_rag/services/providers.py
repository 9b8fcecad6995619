"""Embedding providers.

Classes:
    ProviderEmbedding: Vectors plus token usage returned by a single provider call.
    EmbeddingProvider: Protocol every provider implements.
    OpenAIEmbeddingProvider: Calls the OpenAI embeddings API through AsyncOpenAI.
    HashingEmbeddingProvider: Deterministic local vectors from scikit-learn's HashingVectorizer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    OpenAIError,
    RateLimitError,
)
from sklearn.feature_extraction.text import HashingVectorizer

from workshop_rag.core.config import Settings, get_settings
from workshop_rag.core.errors import EmbeddingGenerationFailed, ProviderError
from workshop_rag.services.registry import EmbeddingModelDescriptor
from workshop_rag.utils.text import estimate_tokens

_LOGGER = logging.getLogger(__name__)

_EMBED_BATCH_MAX = 256


@dataclass(slots=True)
class ProviderEmbedding:
    vectors: list[list[float]]
    tokens_used: int
    model: str
    provider: str = "openai"


@runtime_checkable
class EmbeddingProvider(Protocol):
    name: str

    async def embed(self, texts: Sequence[str], model: EmbeddingModelDescriptor) -> ProviderEmbedding:
        ...

    async def health_check(self) -> bool:
        ...


class OpenAIEmbeddingProvider:
    name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key, base_url=settings.openai_base_url)
        else:
            self._client = None

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def embed(self, texts: Sequence[str], model: EmbeddingModelDescriptor) -> ProviderEmbedding:
        if self._client is None:
            raise EmbeddingGenerationFailed("OpenAI client not configured. Set OPENAI_API_KEY.", item_count=len(texts))

        docs = list(texts)
        vectors: list[list[float]] = []
        tokens_used = 0
        for start in range(0, len(docs), _EMBED_BATCH_MAX):
            chunk = docs[start : start + _EMBED_BATCH_MAX]
            try:
                response = await self._client.embeddings.create(model=model.name, input=chunk)
            except (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError) as exc:
                raise ProviderError(f"OpenAI embeddings request failed: {exc}") from exc
            except OpenAIError as exc:
                # auth, quota and malformed-input errors fail the same way on every attempt
                raise EmbeddingGenerationFailed(
                    f"OpenAI rejected the embeddings request: {exc}",
                    item_count=len(chunk),
                ) from exc

            vectors.extend(item.embedding for item in response.data)
            usage = getattr(response, "usage", None)
            reported = getattr(usage, "total_tokens", None) if usage is not None else None
            if reported is None:
                reported = sum(estimate_tokens(text) for text in chunk)
            tokens_used += int(reported)

        return ProviderEmbedding(vectors=vectors, tokens_used=tokens_used, model=model.name, provider=self.name)

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.models.list()
        except OpenAIError as exc:
            _LOGGER.warning("OpenAI health check failed: %s", exc)
            return False
        return True


class HashingEmbeddingProvider:
    """Local provider producing L2-normalised character n-gram hashes.

    Stands in for self-hosted sentence encoders: vectors are deterministic,
    have the registered dimensionality and need no network access.
    """

    name = "local"

    def __init__(self, ngram_range: tuple[int, int] = (2, 4)) -> None:
        self._ngram_range = ngram_range
        self._vectorizers: dict[int, HashingVectorizer] = {}

    def _vectorizer(self, dimensions: int) -> HashingVectorizer:
        vectorizer = self._vectorizers.get(dimensions)
        if vectorizer is None:
            vectorizer = HashingVectorizer(
                analyzer="char_wb",
                ngram_range=self._ngram_range,
                n_features=dimensions,
                alternate_sign=False,
                norm="l2",
                lowercase=True,
            )
            self._vectorizers[dimensions] = vectorizer
        return vectorizer

    async def embed(self, texts: Sequence[str], model: EmbeddingModelDescriptor) -> ProviderEmbedding:
        docs = list(texts)
        if not docs:
            return ProviderEmbedding(vectors=[], tokens_used=0, model=model.name, provider=self.name)
        matrix = self._vectorizer(model.dimensions).transform(docs)
        dense = np.asarray(matrix.toarray(), dtype=np.float32)
        tokens_used = sum(estimate_tokens(text) for text in docs)
        return ProviderEmbedding(
            vectors=dense.tolist(),
            tokens_used=tokens_used,
            model=model.name,
            provider=self.name,
        )

    async def health_check(self) -> bool:
        return True
