"""Embed-and-store pipeline for documents coming from the content platform.

Classes:
    IngestionSummary: Counts reported after consuming a change feed.
    DocumentIndexer: Validates document metadata, embeds content in batches and upserts the vectors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterable, Iterable, Sequence

from workshop_rag.core.config import Settings
from workshop_rag.schemas.documents import DocumentChange, parse_document_metadata
from workshop_rag.schemas.embedding import BatchEmbeddingOptions
from workshop_rag.schemas.vector import UpsertOptions, VectorRecord
from workshop_rag.services.embeddings import EmbeddingGenerator
from workshop_rag.services.vector_store import VectorStore

_LOGGER = logging.getLogger(__name__)

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


@dataclass(slots=True)
class IngestionSummary:
    upserted: int = 0
    deleted: int = 0
    batches: int = 0


class DocumentIndexer:
    def __init__(self, generator: EmbeddingGenerator, store: VectorStore, settings: Settings) -> None:
        self._generator = generator
        self._store = store
        self._settings = settings

    async def store_document_embeddings(
        self,
        documents: Iterable[DocumentChange],
        options: BatchEmbeddingOptions | None = None,
        upsert_options: UpsertOptions | None = None,
    ) -> int:
        """Embed ``documents`` and upsert one vector per identity; returns rows written."""

        items = list(documents)
        if not items:
            return 0
        # reject bad metadata before spending provider calls
        metadata = [
            parse_document_metadata(doc.document_type, doc.metadata).model_dump(mode="json", exclude_none=True)
            for doc in items
        ]

        opts = options or BatchEmbeddingOptions()
        caller_progress = opts.on_progress

        def _progress(completed: int, total: int) -> None:
            _LOGGER.info("Generated %d/%d document embeddings", completed, total)
            if caller_progress is not None:
                caller_progress(completed, total)

        embeddings = await self._generator.generate_batch(
            [doc.content for doc in items],
            opts.model_copy(update={"on_progress": _progress}),
        )

        records = [
            VectorRecord(
                document_id=doc.document_id,
                document_type=doc.document_type.value,
                content=doc.content,
                vector=embedding.vector,
                language=doc.language or embedding.language,
                model=embedding.model,
                metadata={
                    **payload,
                    "priority": doc.priority,
                    "tokens": embedding.tokens,
                    "cost": embedding.cost,
                },
                confidence_score=embedding.confidence,
                token_count=embedding.tokens,
            )
            for doc, payload, embedding in zip(items, metadata, embeddings)
        ]
        return await self._store.upsert(records, upsert_options)

    async def _flush(
        self,
        pending: dict[tuple[str, str], DocumentChange],
        summary: IngestionSummary,
        options: BatchEmbeddingOptions | None,
    ) -> None:
        if not pending:
            return
        ordered: Sequence[DocumentChange] = sorted(pending.values(), key=lambda doc: _PRIORITY_ORDER[doc.priority])
        summary.upserted += await self.store_document_embeddings(ordered, options)
        summary.batches += 1
        pending.clear()

    async def _apply(
        self,
        change: DocumentChange,
        pending: dict[tuple[str, str], DocumentChange],
        summary: IngestionSummary,
        options: BatchEmbeddingOptions | None,
        batch_size: int,
    ) -> None:
        identity = (change.document_type.value, change.document_id)
        if change.deleted:
            # earlier edits to other documents land before the delete
            pending.pop(identity, None)
            await self._flush(pending, summary, options)
            summary.deleted += await self._store.delete([change.document_id], change.document_type.value)
            return
        pending.pop(identity, None)
        pending[identity] = change
        if len(pending) >= batch_size:
            await self._flush(pending, summary, options)

    async def consume(
        self,
        feed: Iterable[DocumentChange] | AsyncIterable[DocumentChange],
        options: BatchEmbeddingOptions | None = None,
        *,
        batch_size: int | None = None,
    ) -> IngestionSummary:
        """Drain a change feed, re-embedding edits and removing deleted documents.

        Changes are buffered up to ``batch_size`` distinct identities; a later change
        to the same identity replaces the buffered one. Within a flush, high
        priority documents are embedded first.
        """

        size = batch_size or self._settings.embedding_batch_size
        summary = IngestionSummary()
        pending: dict[tuple[str, str], DocumentChange] = {}
        if isinstance(feed, AsyncIterable):
            async for change in feed:
                await self._apply(change, pending, summary, options, size)
        else:
            for change in feed:
                await self._apply(change, pending, summary, options, size)
        await self._flush(pending, summary, options)
        _LOGGER.info(
            "Change feed consumed: %d upserted, %d deleted in %d batches",
            summary.upserted,
            summary.deleted,
            summary.batches,
        )
        return summary
