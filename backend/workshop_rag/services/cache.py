"""Embedding caches.

Classes:
    EmbeddingCacheEntry: A cached embedding result scoped to one model.
    EmbeddingCacheBackend: get/put/evict contract for in-process caches.
    FifoEmbeddingCache: Bounded cache that evicts the oldest-inserted entries first.
    LruEmbeddingCache: Bounded cache that evicts the least recently read entries first.
    SqlEmbeddingCache: Persistent tier backed by the ``embedding_cache`` table.

Functions:
    cache_key(text, model): Cache key derived from the normalised text hash and the model name.
    create_cache(settings): Build the in-process cache selected by ``embedding_cache_policy``.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from workshop_rag.core.config import Settings
from workshop_rag.models import EmbeddingCacheRecord
from workshop_rag.utils.text import content_hash
from workshop_rag.utils.timing import as_utc, utcnow
from workshop_rag.utils.vectors import deserialise_vector, serialise_vector

_LOGGER = logging.getLogger(__name__)


def cache_key(text: str, model: str) -> str:
    return f"{model}:{content_hash(text)}"


@dataclass(slots=True)
class EmbeddingCacheEntry:
    key: str
    model: str
    vector: list[float]
    tokens: int
    cost: float
    confidence: float
    language: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: Optional[datetime] = None
    hit_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and as_utc(self.expires_at) <= as_utc(now)


class EmbeddingCacheBackend(ABC):
    max_size: int

    @abstractmethod
    def get(self, key: str, model: str) -> Optional[EmbeddingCacheEntry]:
        ...

    @abstractmethod
    def put(self, entry: EmbeddingCacheEntry) -> None:
        ...

    @abstractmethod
    def evict(self) -> int:
        """Drop expired entries, then the overflow; return how many were removed."""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...


class _BoundedEmbeddingCache(EmbeddingCacheBackend):
    _refresh_on_read = False

    def __init__(
        self,
        max_size: int = 10000,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._clock = clock
        self._entries: OrderedDict[str, EmbeddingCacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, model: str) -> Optional[EmbeddingCacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.model != model:
                return None
            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                return None
            entry.hit_count += 1
            entry.last_accessed_at = now
            if self._refresh_on_read:
                self._entries.move_to_end(key)
            return replace(entry, vector=list(entry.vector))

    def put(self, entry: EmbeddingCacheEntry) -> None:
        with self._lock:
            if entry.expires_at is None and self._ttl is not None:
                entry = replace(entry, expires_at=entry.created_at + self._ttl)
            self._entries.pop(entry.key, None)
            self._entries[entry.key] = entry
            self._evict_locked()

    def evict(self) -> int:
        with self._lock:
            return self._evict_locked()

    def _evict_locked(self) -> int:
        removed = 0
        if self._ttl is not None or any(e.expires_at is not None for e in self._entries.values()):
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            removed += len(expired)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class FifoEmbeddingCache(_BoundedEmbeddingCache):
    _refresh_on_read = False


class LruEmbeddingCache(_BoundedEmbeddingCache):
    _refresh_on_read = True


def create_cache(settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> EmbeddingCacheBackend:
    cache_cls = LruEmbeddingCache if settings.embedding_cache_policy == "lru" else FifoEmbeddingCache
    return cache_cls(
        settings.embedding_cache_max_entries,
        ttl_seconds=settings.embedding_cache_ttl_seconds,
        clock=clock,
    )


class SqlEmbeddingCache:
    """Cross-process cache tier. Failures are logged and treated as misses."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        preproc_version: str,
        ttl_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._preproc_version = preproc_version
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None

    async def get_many(self, hashes: Iterable[str], model: str) -> dict[str, EmbeddingCacheEntry]:
        wanted = sorted(set(hashes))
        if not wanted:
            return {}
        now = utcnow()
        try:
            async with self._session_factory() as session:
                stmt = select(EmbeddingCacheRecord).where(
                    EmbeddingCacheRecord.content_hash.in_(wanted),
                    EmbeddingCacheRecord.model_id == model,
                    EmbeddingCacheRecord.preproc_version == self._preproc_version,
                )
                result = await session.exec(stmt)
                records = result.scalars().all()
                found: dict[str, EmbeddingCacheEntry] = {}
                for record in records:
                    if record.expires_at is not None and as_utc(record.expires_at) <= now:
                        continue
                    try:
                        vector = deserialise_vector(record.vector, record.dim)
                    except ValueError:
                        _LOGGER.warning("Discarding corrupt cached vector %s for %s", record.content_hash, model)
                        continue
                    record.hit_count += 1
                    record.last_accessed_at = now
                    found[record.content_hash] = EmbeddingCacheEntry(
                        key=f"{model}:{record.content_hash}",
                        model=model,
                        vector=vector.astype(np.float64).tolist(),
                        tokens=record.token_count,
                        cost=record.cost,
                        confidence=record.confidence,
                        language=record.language,
                        created_at=record.created_at,
                        last_accessed_at=now,
                        expires_at=record.expires_at,
                        hit_count=record.hit_count,
                    )
                await session.commit()
                return found
        except SQLAlchemyError:
            _LOGGER.warning("Persistent embedding cache lookup failed for model %s", model, exc_info=True)
            return {}

    async def put_many(
        self,
        entries: dict[str, EmbeddingCacheEntry],
        *,
        provider: str | None = None,
    ) -> None:
        if not entries:
            return
        models = {entry.model for entry in entries.values()}
        try:
            async with self._session_factory() as session:
                for model in models:
                    scoped = {h: e for h, e in entries.items() if e.model == model}
                    stmt = select(EmbeddingCacheRecord).where(
                        EmbeddingCacheRecord.content_hash.in_(list(scoped)),
                        EmbeddingCacheRecord.model_id == model,
                        EmbeddingCacheRecord.preproc_version == self._preproc_version,
                    )
                    result = await session.exec(stmt)
                    existing_map = {record.content_hash: record for record in result.scalars()}

                    for text_hash, entry in scoped.items():
                        vector_bytes = serialise_vector(entry.vector)
                        expires_at = entry.expires_at
                        if expires_at is None and self._ttl is not None:
                            expires_at = entry.created_at + self._ttl
                        record = existing_map.get(text_hash)
                        if record is None:
                            record = EmbeddingCacheRecord(
                                content_hash=text_hash,
                                model_id=model,
                                preproc_version=self._preproc_version,
                                provider=provider,
                                language=entry.language,
                                vector=vector_bytes,
                                dim=len(entry.vector),
                                token_count=entry.tokens,
                                cost=entry.cost,
                                confidence=entry.confidence,
                                expires_at=expires_at,
                            )
                            session.add(record)
                        else:
                            record.vector = vector_bytes
                            record.dim = len(entry.vector)
                            record.token_count = entry.tokens
                            record.cost = entry.cost
                            record.confidence = entry.confidence
                            record.language = entry.language
                            record.expires_at = expires_at
                            if provider:
                                record.provider = provider
                await session.commit()
        except SQLAlchemyError:
            _LOGGER.warning("Failed to persist %d cached embeddings", len(entries), exc_info=True)

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(EmbeddingCacheRecord).where(
                    EmbeddingCacheRecord.expires_at.is_not(None),
                    EmbeddingCacheRecord.expires_at <= utcnow(),
                )
            )
            await session.commit()
            return int(result.rowcount or 0)
