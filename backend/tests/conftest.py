import re
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from workshop_rag.core.config import Settings
from workshop_rag.core.container import RagCore, build_rag_core
from workshop_rag.core.errors import ProviderError
from workshop_rag.db.session import create_engine, create_session_factory, init_db
from workshop_rag.services.providers import ProviderEmbedding
from workshop_rag.services.registry import EmbeddingModelDescriptor, ModelRegistry

TEST_MODEL = "test-embedding-128"
TEST_DIMENSIONS = 128

_WORD = re.compile(r"\w+")


class VocabularyEmbeddingProvider:
    """Bag-of-words vectors: one dimension per distinct word longer than three characters."""

    name = "openai"

    def __init__(self) -> None:
        self.vocabulary: dict[str, int] = {}
        self.calls: int = 0
        self.payloads: list[list[str]] = []

    def vector_for(self, text: str, dimensions: int) -> list[float]:
        vector = [0.0] * dimensions
        for word in _WORD.findall(text.lower()):
            if len(word) <= 3:
                continue
            index = self.vocabulary.setdefault(word, len(self.vocabulary))
            vector[index % dimensions] += 1.0
        return vector

    async def embed(self, texts, model) -> ProviderEmbedding:
        self.calls += 1
        self.payloads.append(list(texts))
        vectors = [self.vector_for(text, model.dimensions) for text in texts]
        tokens = sum(max(1, len(text) // 4) for text in texts)
        return ProviderEmbedding(vectors=vectors, tokens_used=tokens, model=model.name, provider=self.name)

    async def health_check(self) -> bool:
        return True


class FlakyEmbeddingProvider(VocabularyEmbeddingProvider):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def embed(self, texts, model) -> ProviderEmbedding:
        if self.failures > 0:
            self.failures -= 1
            self.calls += 1
            raise ProviderError("rate limited")
        return await super().embed(texts, model)


class WrongDimensionProvider(VocabularyEmbeddingProvider):
    async def embed(self, texts, model) -> ProviderEmbedding:
        self.calls += 1
        return ProviderEmbedding(vectors=[[0.5, 0.5] for _ in texts], tokens_used=1, model=model.name)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_registry() -> ModelRegistry:
    registry = ModelRegistry()
    registry.register(
        EmbeddingModelDescriptor(
            TEST_MODEL,
            "openai",
            TEST_DIMENSIONS,
            512,
            0.00002,
            languages=("en", "pl"),
        )
    )
    return registry


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        default_embedding_model=TEST_MODEL,
        inter_batch_delay=0.0,
        embedding_retry_delay=0.01,
        vector_retry_delay=0.01,
    )


@pytest.fixture()
def registry() -> ModelRegistry:
    return make_registry()


@pytest.fixture()
def provider() -> VocabularyEmbeddingProvider:
    return VocabularyEmbeddingProvider()


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture()
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = create_engine(settings)
    await init_db(db_engine)
    try:
        yield db_engine
    finally:
        await db_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine):
    return create_session_factory(engine)


@pytest_asyncio.fixture()
async def core(settings, engine, registry, provider, sleep) -> AsyncGenerator[RagCore, None]:
    rag_core = build_rag_core(
        settings,
        providers={"openai": provider, "local": provider},
        engine=engine,
        registry=registry,
        sleep=sleep,
    )
    await rag_core.initialize()
    try:
        yield rag_core
    finally:
        await rag_core.close()
