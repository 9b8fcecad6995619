import asyncio
import logging
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from conftest import (
    TEST_DIMENSIONS,
    TEST_MODEL,
    FlakyEmbeddingProvider,
    VocabularyEmbeddingProvider,
    WrongDimensionProvider,
    make_registry,
)
from workshop_rag.core.errors import (
    EmbeddingGenerationFailed,
    InvalidInput,
    ProviderError,
    ProviderTimeout,
    UnsupportedModel,
)
from workshop_rag.schemas.embedding import BatchEmbeddingOptions
from workshop_rag.services.cache import create_cache
from workshop_rag.services.embeddings import EmbeddingGenerator, calculate_confidence
from workshop_rag.services.providers import OpenAIEmbeddingProvider, ProviderEmbedding


def build_generator(settings, provider, sleep):
    return EmbeddingGenerator(
        registry=make_registry(),
        providers={"openai": provider},
        cache=create_cache(settings),
        settings=settings,
        sleep=sleep,
    )


class FailAfterProvider(VocabularyEmbeddingProvider):
    def __init__(self, successes: int) -> None:
        super().__init__()
        self.successes = successes

    async def embed(self, texts, model) -> ProviderEmbedding:
        if self.successes <= 0:
            self.calls += 1
            raise ProviderError("upstream unavailable")
        self.successes -= 1
        return await super().embed(texts, model)


class RevokedKeyEmbeddings:
    """Serves ``successes`` requests, then answers like an API that revoked the key."""

    def __init__(self, successes: int) -> None:
        self.successes = successes
        self.calls = 0

    async def create(self, *, model, input):
        self.calls += 1
        if self.successes <= 0:
            raise OpenAIError("Incorrect API key provided")
        self.successes -= 1
        vector = [1.0] + [0.0] * (TEST_DIMENSIONS - 1)
        return SimpleNamespace(data=[SimpleNamespace(embedding=vector) for _ in input], usage=None)


class SlowProvider(VocabularyEmbeddingProvider):
    async def embed(self, texts, model) -> ProviderEmbedding:
        await asyncio.sleep(1.0)
        return await super().embed(texts, model)


@pytest.mark.asyncio
async def test_generate_returns_vector_with_model_metadata(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    result = await generator.generate("Participants enjoyed the breakout sessions")

    assert result.model == TEST_MODEL
    assert result.dimensions == TEST_DIMENSIONS
    assert len(result.vector) == TEST_DIMENSIONS
    assert result.language == "en"
    assert result.cached is False
    assert result.tokens > 0
    assert result.cost == pytest.approx(result.tokens / 1000 * 0.00002)
    assert 0.7 <= result.confidence <= 1.0


@pytest.mark.asyncio
async def test_cache_hit_skips_provider_and_returns_identical_vector(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    first = await generator.generate("Workshop pacing was great")
    second = await generator.generate("  Workshop   pacing was great ")

    assert provider.calls == 1
    assert second.cached is True
    assert second.vector == first.vector
    assert second.tokens == first.tokens


@pytest.mark.asyncio
async def test_skip_cache_forces_provider_call(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    await generator.generate("Workshop pacing was great")
    again = await generator.generate("Workshop pacing was great", skip_cache=True)

    assert provider.calls == 2
    assert again.cached is False


@pytest.mark.asyncio
async def test_empty_text_and_unknown_model_are_rejected(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    with pytest.raises(InvalidInput):
        await generator.generate("   ")
    with pytest.raises(UnsupportedModel):
        await generator.generate("hello there", model="not-a-model")
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_oversized_text_only_logs_warning(settings, provider, sleep, caplog):
    generator = build_generator(settings, provider, sleep)
    text = "feedback " * 300
    with caplog.at_level(logging.WARNING, logger="workshop_rag.services.embeddings"):
        result = await generator.generate(text)

    assert len(result.vector) == TEST_DIMENSIONS
    assert any("exceeds model" in record.message for record in caplog.records)


@pytest.mark.asyncio
async def test_language_is_detected_or_defaulted(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    polish = await generator.generate("Zażółć gęślą jaźń podczas warsztatów")
    assert polish.language == "pl"

    explicit = await generator.generate("Bonjour à tous les participants", language="fr")
    assert explicit.language == "fr"

    undetected = await generator.generate("Привет всем участникам", detect_language=False)
    assert undetected.language == "en"


@pytest.mark.asyncio
async def test_retry_then_succeed_calls_provider_three_times(settings, sleep):
    provider = FlakyEmbeddingProvider(failures=2)
    generator = build_generator(settings, provider, sleep)

    result = await generator.generate("Transient failures should be retried")

    assert provider.calls == 3
    assert len(result.vector) == TEST_DIMENSIONS
    assert sleep.delays == pytest.approx([0.01, 0.02])


@pytest.mark.asyncio
async def test_exhausted_retries_raise_generation_failed(settings, sleep):
    provider = FlakyEmbeddingProvider(failures=10)
    generator = build_generator(settings, provider, sleep)

    with pytest.raises(EmbeddingGenerationFailed) as excinfo:
        await generator.generate("This never succeeds")

    assert isinstance(excinfo.value.__cause__, ProviderError)
    assert provider.calls == settings.embedding_max_retries + 1


@pytest.mark.asyncio
async def test_wrong_dimensionality_is_not_accepted(settings, sleep):
    provider = WrongDimensionProvider()
    generator = build_generator(settings, provider, sleep)

    with pytest.raises(EmbeddingGenerationFailed):
        await generator.generate("Dimensions must match the registry")
    assert provider.calls == 1
    assert len(generator.cache) == 0


@pytest.mark.asyncio
async def test_batch_reports_progress_and_deduplicates_misses(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    progress: list[tuple[int, int]] = []
    texts = [
        "alpha bravo charlie",
        "alpha bravo charlie",
        "delta echo foxtrot",
        "golf hotel india",
        "juliet kilo lima",
    ]

    results = await generator.generate_batch(
        texts,
        BatchEmbeddingOptions(batch_size=2, on_progress=lambda done, total: progress.append((done, total))),
    )

    assert len(results) == 5
    assert results[0].vector == results[1].vector
    assert progress == [(2, 5), (4, 5), (5, 5)]
    assert provider.payloads[0] == ["alpha bravo charlie"]
    assert provider.calls == 3


@pytest.mark.asyncio
async def test_batch_failure_carries_partial_results(settings, sleep):
    provider = FailAfterProvider(successes=1)
    generator = build_generator(settings, provider, sleep)

    with pytest.raises(EmbeddingGenerationFailed) as excinfo:
        await generator.generate_batch(
            ["first batch text", "second batch text", "third batch text"],
            BatchEmbeddingOptions(batch_size=1, max_retries=1, retry_delay=0.5),
        )

    error = excinfo.value
    assert error.batch_index == 1
    assert error.item_count == 1
    assert len(error.partial_results) == 1
    assert sleep.delays == pytest.approx([0.5])


@pytest.mark.asyncio
async def test_batch_timeout_surfaces_provider_timeout(settings, sleep):
    generator = build_generator(settings, SlowProvider(), sleep)

    with pytest.raises(EmbeddingGenerationFailed) as excinfo:
        await generator.generate_batch(["slow text"], BatchEmbeddingOptions(timeout=0.01, max_retries=0))

    assert isinstance(excinfo.value.__cause__, ProviderTimeout)


@pytest.mark.asyncio
async def test_batch_rejects_empty_items_before_any_call(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    with pytest.raises(InvalidInput):
        await generator.generate_batch(["fine", ""])
    assert provider.calls == 0


def test_calculate_cost_for_hello(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    estimate = generator.calculate_cost(["hello"], model="text-embedding-3-small")

    assert estimate.tokens == 2
    assert estimate.cost == pytest.approx(2 / 1000 * 0.00002)
    assert estimate.details[0].text == "hello"
    assert estimate.details[0].token_count == 2


def test_confidence_heuristic_is_capped():
    registry = make_registry()
    descriptor = registry.require(TEST_MODEL)
    sparse = [0.0] * TEST_DIMENSIONS
    sparse[0] = 1.0
    assert calculate_confidence(sparse, "short", "en", descriptor) == pytest.approx(0.8)
    assert calculate_confidence(sparse, "short", "ja", descriptor) == pytest.approx(0.7)

    peaked = [0.0] * TEST_DIMENSIONS
    peaked[0] = 20.0
    assert calculate_confidence(peaked, "x" * 150, "en", descriptor) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_health_check_reports_provider_and_cache(settings, provider, sleep):
    generator = build_generator(settings, provider, sleep)
    await generator.generate("Cache me please")

    health = await generator.health_check()

    assert health.provider is True
    assert health.cache_size == 1
    assert health.cache_max_size == settings.embedding_cache_max_entries
    assert TEST_MODEL in health.models

    generator.clear_cache()
    assert len(generator.cache) == 0


@pytest.mark.asyncio
async def test_rejected_requests_fail_the_batch_without_retrying(settings, sleep):
    embeddings = RevokedKeyEmbeddings(successes=1)
    client = SimpleNamespace(embeddings=embeddings, models=SimpleNamespace())
    generator = build_generator(settings, OpenAIEmbeddingProvider(client=client, settings=settings), sleep)

    with pytest.raises(EmbeddingGenerationFailed) as excinfo:
        await generator.generate_batch(
            ["first batch text", "second batch text", "third batch text"],
            BatchEmbeddingOptions(batch_size=1, max_retries=3),
        )

    error = excinfo.value
    assert error.batch_index == 1
    assert error.item_count == 1
    assert len(error.partial_results) == 1
    assert embeddings.calls == 2
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_unconfigured_provider_fails_without_retrying(settings, sleep):
    provider = OpenAIEmbeddingProvider(settings=settings.model_copy(update={"openai_api_key": None}))
    generator = build_generator(settings, provider, sleep)

    with pytest.raises(EmbeddingGenerationFailed, match="not configured"):
        await generator.generate("Needs a configured client")

    assert sleep.delays == []
