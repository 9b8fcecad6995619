"""Embedding model descriptors and the registry that resolves them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

from workshop_rag.core.errors import UnsupportedModel

ProviderKind = Literal["openai", "local"]

_OPENAI_LANGUAGES = ("en", "pl", "es", "fr", "de", "it", "pt", "ru", "ja", "ko", "zh")
_E5_LANGUAGES = _OPENAI_LANGUAGES + ("ar", "hi")
_MPNET_LANGUAGES = _E5_LANGUAGES + ("tr",)


@dataclass(frozen=True)
class EmbeddingModelDescriptor:
    name: str
    provider: ProviderKind
    dimensions: int
    max_tokens: int
    cost_per_1k_tokens: float
    languages: tuple[str, ...] = ("en",)
    specialties: tuple[str, ...] = field(default_factory=tuple)

    def supports_language(self, language: str | None) -> bool:
        return bool(language) and language in self.languages

    def cost_for(self, tokens: int) -> float:
        return tokens / 1000 * self.cost_per_1k_tokens


DEFAULT_MODELS: tuple[EmbeddingModelDescriptor, ...] = (
    EmbeddingModelDescriptor(
        "text-embedding-3-small",
        "openai",
        1536,
        8191,
        0.00002,
        _OPENAI_LANGUAGES,
        ("general", "multilingual", "semantic_search"),
    ),
    EmbeddingModelDescriptor(
        "text-embedding-3-large",
        "openai",
        3072,
        8191,
        0.00013,
        _OPENAI_LANGUAGES,
        ("general", "multilingual", "high_accuracy", "complex_reasoning"),
    ),
    EmbeddingModelDescriptor(
        "text-embedding-ada-002",
        "openai",
        1536,
        8191,
        0.0001,
        ("en",),
        ("general", "english"),
    ),
    EmbeddingModelDescriptor(
        "multilingual-e5-large",
        "local",
        1024,
        512,
        0.0,
        _E5_LANGUAGES,
        ("multilingual", "cross_lingual", "semantic_similarity"),
    ),
    EmbeddingModelDescriptor(
        "paraphrase-multilingual-mpnet-base-v2",
        "local",
        768,
        514,
        0.0,
        _MPNET_LANGUAGES,
        ("paraphrase", "multilingual", "sentence_similarity"),
    ),
)


class ModelRegistry:
    """Name-keyed lookup of embedding model descriptors."""

    def __init__(self, models: Iterable[EmbeddingModelDescriptor] = DEFAULT_MODELS) -> None:
        self._models: dict[str, EmbeddingModelDescriptor] = {}
        for descriptor in models:
            self.register(descriptor)

    def register(self, descriptor: EmbeddingModelDescriptor) -> None:
        if descriptor.dimensions <= 0:
            raise ValueError(f"Model {descriptor.name} must declare positive dimensions")
        self._models[descriptor.name] = descriptor

    def get(self, name: str) -> Optional[EmbeddingModelDescriptor]:
        return self._models.get(name)

    def require(self, name: str) -> EmbeddingModelDescriptor:
        descriptor = self._models.get(name)
        if descriptor is None:
            raise UnsupportedModel(name)
        return descriptor

    def names(self) -> list[str]:
        return list(self._models)

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __iter__(self):
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)
