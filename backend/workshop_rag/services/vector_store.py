"""Vector storage and metric-aware similarity search over ``document_embeddings``.

Classes:
    VectorStore: Batched transactional upserts, filtered similarity search, statistics and index upkeep.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from functools import partial
from typing import Any, Iterable, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, SQLAlchemyError, StatementError
from sqlalchemy.ext.asyncio import async_sessionmaker

from workshop_rag.core.config import Settings
from workshop_rag.core.errors import InvalidInput, StoreError, VectorStoreOperationFailed
from workshop_rag.models import DocumentEmbedding, VectorIndexConfig
from workshop_rag.schemas.metrics import IndexHealth, IndexOptimization, IndexRecommendation
from workshop_rag.schemas.vector import (
    EmbeddingStatistics,
    IndexMethod,
    IndexPlan,
    SearchFilters,
    UpsertOptions,
    VectorRecord,
    VectorSearchOptions,
    VectorSearchResult,
)
from workshop_rag.services.indexing import BuiltIndex, IndexPolicy, build_index
from workshop_rag.services.metrics import PerformanceMonitor
from workshop_rag.services.registry import ModelRegistry
from workshop_rag.services.retry import RetryPolicy, SleepFn, retry_async
from workshop_rag.utils.timing import as_utc, elapsed_ms, utcnow
from workshop_rag.utils.vectors import SIMILARITY_METRICS, deserialise_vector, serialise_vector, similarity_scores

_LOGGER = logging.getLogger(__name__)


class VectorStore:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        registry: ModelRegistry,
        settings: Settings,
        policy: IndexPolicy | None = None,
        monitor: PerformanceMonitor | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._monitor = monitor
        self._registry = registry
        self._settings = settings
        self._policy = policy or IndexPolicy(
            exact_max_rows=settings.exact_search_max_rows,
            hnsw_min_rows=settings.hnsw_min_rows,
        )
        self._sleep = sleep
        self._generation = 0
        self._indexes: dict[tuple[int, str, str], BuiltIndex] = {}

    @property
    def policy(self) -> IndexPolicy:
        return self._policy

    # ------------------------------------------------------------------ writes

    def _validate_record(self, record: VectorRecord, position: int) -> None:
        descriptor = self._registry.require(record.model)
        if len(record.vector) != descriptor.dimensions:
            raise InvalidInput(
                f"Record {position} ({record.document_type}:{record.document_id}) has a "
                f"{len(record.vector)}-dimensional vector; {descriptor.name} expects {descriptor.dimensions}"
            )
        if not all(math.isfinite(value) for value in record.vector):
            raise InvalidInput(f"Record {position} ({record.document_type}:{record.document_id}) has non-finite values")
        if not record.document_type:
            raise InvalidInput(f"Record {position} is missing a document type")

    async def upsert(
        self,
        records: Iterable[VectorRecord],
        options: UpsertOptions | None = None,
    ) -> int:
        opts = options or UpsertOptions()
        items = list(records)
        if not items:
            return 0
        for position, record in enumerate(items):
            self._validate_record(record, position)

        batch_size = opts.batch_size or self._settings.vector_batch_size
        policy = RetryPolicy.from_retries(
            self._settings.vector_max_retries if opts.max_retries is None else opts.max_retries,
            self._settings.vector_retry_delay if opts.retry_delay is None else opts.retry_delay,
            max_delay=self._settings.retry_max_delay,
            jitter=self._settings.retry_jitter,
        )
        total = len(items)
        batches = [items[start : start + batch_size] for start in range(0, total, batch_size)]

        completed = 0
        for batch_index, batch in enumerate(batches):
            try:
                await retry_async(
                    partial(self._write_batch, batch, opts.skip_existing, batch_index),
                    policy,
                    retry_on=(StoreError,),
                    sleep=self._sleep,
                    description=f"Vector upsert batch {batch_index + 1}/{len(batches)}",
                )
            except StoreError as exc:
                _LOGGER.error("Vector upsert batch %d failed after %d retries: %s", batch_index + 1, policy.max_retries, exc)
                raise VectorStoreOperationFailed(
                    f"Upsert batch {batch_index} failed after {policy.max_retries} retries: {exc}",
                    batch_index=batch_index,
                    item_count=len(batch),
                ) from exc
            completed += len(batch)
            self._generation += 1
            if opts.on_progress is not None:
                opts.on_progress(completed, total)

        _LOGGER.info("Upserted %d embeddings in %d batches", completed, len(batches))
        return completed

    async def _write_batch(self, batch: Sequence[VectorRecord], skip_existing: bool, batch_index: int) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing: dict[tuple[str, str], DocumentEmbedding] = {}
                    if skip_existing:
                        existing = await self._load_existing(session, batch)
                    now = utcnow()
                    for record in batch:
                        identity = (record.document_type, record.document_id)
                        metadata_json = json.dumps(record.metadata or {}, default=str, sort_keys=True)
                        vector_bytes = serialise_vector(record.vector)
                        row = existing.get(identity)
                        if row is None:
                            row = DocumentEmbedding(
                                document_type=record.document_type,
                                document_id=record.document_id,
                                content=record.content,
                                vector=vector_bytes,
                                dim=len(record.vector),
                                language=record.language or "en",
                                embedding_model=record.model,
                                metadata_json=metadata_json,
                                confidence_score=record.confidence_score,
                                token_count=record.token_count,
                                created_at=now,
                                updated_at=now,
                            )
                            session.add(row)
                            if skip_existing:
                                existing[identity] = row
                        else:
                            row.content = record.content
                            row.vector = vector_bytes
                            row.dim = len(record.vector)
                            row.language = record.language or "en"
                            row.embedding_model = record.model
                            row.metadata_json = metadata_json
                            row.confidence_score = record.confidence_score
                            row.token_count = record.token_count
                            row.updated_at = now
        except (IntegrityError, DataError) as exc:
            _LOGGER.error("Rejected upsert batch %d: %s", batch_index + 1, exc.orig)
            raise VectorStoreOperationFailed(
                f"Database rejected upsert batch {batch_index}: {exc.orig}",
                batch_index=batch_index,
                item_count=len(batch),
            ) from exc
        except DBAPIError as exc:
            raise StoreError(f"Upsert batch {batch_index} failed: {exc}") from exc
        except StatementError as exc:
            # raised while binding parameters, before the database saw the statement
            _LOGGER.error("Could not bind upsert batch %d: %s", batch_index + 1, exc.orig)
            raise VectorStoreOperationFailed(
                f"Could not bind upsert batch {batch_index}: {exc.orig}",
                batch_index=batch_index,
                item_count=len(batch),
            ) from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Upsert batch {batch_index} failed: {exc}") from exc

    async def _load_existing(self, session, batch: Sequence[VectorRecord]) -> dict[tuple[str, str], DocumentEmbedding]:
        ids_by_type: dict[str, set[str]] = {}
        for record in batch:
            ids_by_type.setdefault(record.document_type, set()).add(record.document_id)
        existing: dict[tuple[str, str], DocumentEmbedding] = {}
        for document_type, document_ids in ids_by_type.items():
            stmt = select(DocumentEmbedding).where(
                DocumentEmbedding.document_type == document_type,
                DocumentEmbedding.document_id.in_(sorted(document_ids)),
            )
            result = await session.exec(stmt)
            for row in result.scalars().all():
                existing[(row.document_type, row.document_id)] = row
        return existing

    async def delete(self, document_ids: Iterable[str], document_type: str | None = None) -> int:
        ids = sorted(set(document_ids))
        if not ids:
            return 0
        stmt = delete(DocumentEmbedding).where(DocumentEmbedding.document_id.in_(ids))
        if document_type is not None:
            stmt = stmt.where(DocumentEmbedding.document_type == document_type)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise VectorStoreOperationFailed(f"Failed to delete embeddings: {exc}", item_count=len(ids)) from exc
        self._generation += 1
        removed = int(result.rowcount or 0)
        _LOGGER.info("Deleted %d embeddings", removed)
        return removed

    # ------------------------------------------------------------------ reads

    def _validate_filters(self, filters: SearchFilters) -> None:
        if filters.created_after and filters.created_before:
            if as_utc(filters.created_after) > as_utc(filters.created_before):
                raise InvalidInput("created_after must not be later than created_before")
        if filters.min_confidence is not None and not 0.0 <= filters.min_confidence <= 1.0:
            raise InvalidInput("min_confidence must lie within [0, 1]")

    def _filter_clauses(self, dim: int, filters: SearchFilters) -> list:
        clauses = [DocumentEmbedding.dim == dim]
        if filters.document_types:
            clauses.append(DocumentEmbedding.document_type.in_(filters.document_types))
        if filters.languages:
            clauses.append(DocumentEmbedding.language.in_(filters.languages))
        if filters.embedding_models:
            clauses.append(DocumentEmbedding.embedding_model.in_(filters.embedding_models))
        if filters.created_after:
            clauses.append(DocumentEmbedding.created_at >= as_utc(filters.created_after))
        if filters.created_before:
            clauses.append(DocumentEmbedding.created_at <= as_utc(filters.created_before))
        if filters.min_confidence is not None:
            clauses.append(DocumentEmbedding.confidence_score >= filters.min_confidence)
        return clauses

    @staticmethod
    def _passes_row_filters(row, filters: SearchFilters, excluded: set[tuple[str, str]]) -> bool:
        if (row.document_type, row.document_id) in excluded:
            return False
        if filters.metadata_equals:
            metadata = json.loads(row.metadata_json) if row.metadata_json else {}
            for key, expected in filters.metadata_equals.items():
                if metadata.get(key) != expected:
                    return False
        return True

    async def search(
        self,
        query_vector: Sequence[float],
        options: VectorSearchOptions | None = None,
    ) -> list[VectorSearchResult]:
        """Score candidate vectors, then load content only for the rows that make the cut.

        Small partitions are scored exhaustively; larger ones ask the ANN index
        for candidates first and re-score those exactly.
        """

        start = time.perf_counter()
        opts = options or VectorSearchOptions()
        query = np.asarray(query_vector, dtype=np.float32)
        if query.ndim != 1 or query.size == 0:
            raise InvalidInput("Query vector must be a non-empty one-dimensional sequence")
        if not np.all(np.isfinite(query)):
            raise InvalidInput("Query vector contains non-finite values")
        metric = opts.metric or self._settings.default_similarity_metric
        if metric not in SIMILARITY_METRICS:
            raise InvalidInput(f"Unknown similarity metric: {metric}")
        filters = opts.filters
        self._validate_filters(filters)
        dim = int(query.size)
        clauses = self._filter_clauses(dim, filters)

        async with self._session_factory() as session:
            result = await session.exec(select(func.count()).select_from(DocumentEmbedding).where(*clauses))
            eligible = int(result.scalar_one())

        method: IndexMethod = "exact"
        results: list[VectorSearchResult] = []
        if eligible:
            method = self._policy.method_for(eligible)
            stmt = select(
                DocumentEmbedding.id,
                DocumentEmbedding.vector,
                DocumentEmbedding.created_at,
                DocumentEmbedding.document_type,
                DocumentEmbedding.document_id,
                DocumentEmbedding.metadata_json,
            ).where(*clauses)
            if method != "exact":
                candidate_ids = await self._ann_candidates(query, dim, metric, method, eligible, opts.limit)
                stmt = stmt.where(DocumentEmbedding.id.in_(candidate_ids))
            selected = await self._score_candidates(stmt, query, dim, metric, filters, opts)
            results = await self._load_results(selected, opts.include_metadata)

        if self._monitor is not None:
            self._monitor.record_search(
                elapsed_ms(start),
                result_count=len(results),
                average_similarity=sum(hit.similarity for hit in results) / len(results) if results else 0.0,
                method=method,
            )
        return results

    async def _score_candidates(
        self,
        stmt,
        query: np.ndarray,
        dim: int,
        metric: str,
        filters: SearchFilters,
        opts: VectorSearchOptions,
    ) -> list[tuple[Any, float]]:
        async with self._session_factory() as session:
            result = await session.exec(stmt)
            rows = result.all()

        excluded = {(ref.document_type, ref.document_id) for ref in filters.exclude}
        candidates = [row for row in rows if self._passes_row_filters(row, filters, excluded)]
        if not candidates:
            return []

        matrix = np.vstack([deserialise_vector(row.vector, dim) for row in candidates])
        scores = similarity_scores(matrix, query, metric)
        scored = sorted(zip(candidates, scores.tolist()), key=lambda pair: as_utc(pair[0].created_at), reverse=True)
        scored.sort(key=lambda pair: pair[1], reverse=True)

        selected: list[tuple[Any, float]] = []
        for row, score in scored:
            if opts.threshold is not None and score < opts.threshold:
                continue
            selected.append((row.id, score))
            if len(selected) >= opts.limit:
                break
        return selected

    async def _load_results(self, selected: Sequence[tuple[Any, float]], include_metadata: bool) -> list[VectorSearchResult]:
        if not selected:
            return []
        async with self._session_factory() as session:
            result = await session.exec(
                select(DocumentEmbedding).where(DocumentEmbedding.id.in_([row_id for row_id, _ in selected]))
            )
            rows = {row.id: row for row in result.scalars().all()}
        # rows deleted between scoring and loading are skipped
        return [self._to_result(rows[row_id], score, include_metadata) for row_id, score in selected if row_id in rows]

    async def _ann_candidates(
        self,
        query: np.ndarray,
        dim: int,
        metric: str,
        method: IndexMethod,
        eligible: int,
        limit: int,
    ) -> list[Any]:
        index = await self._ensure_index(dim, metric, method)
        partition = max(len(index.ids), 1)
        # widen the probe when filters leave only a fraction of the partition eligible
        selectivity = max(1, math.ceil(partition / max(eligible, 1)))
        k = min(partition, limit * self._settings.ann_candidate_multiplier * selectivity)
        return index.search(query, k)

    async def _ensure_index(self, dim: int, metric: str, method: IndexMethod) -> BuiltIndex:
        key = (dim, metric, method)
        cached = self._indexes.get(key)
        if cached is not None and cached.generation == self._generation:
            return cached

        generation = self._generation
        async with self._session_factory() as session:
            stmt = (
                select(DocumentEmbedding.id, DocumentEmbedding.vector)
                .where(DocumentEmbedding.dim == dim)
                .order_by(DocumentEmbedding.created_at)
            )
            result = await session.exec(stmt)
            rows = result.all()

        ids = [row[0] for row in rows]
        matrix = np.vstack([deserialise_vector(row[1], dim) for row in rows])
        plan = IndexPlan(method=method, row_count=len(ids), params=self._policy.params_for(method, len(ids)))
        built = build_index(plan, ids, matrix, metric, generation=generation)
        self._indexes[key] = built
        _LOGGER.info(
            "Built %s index for dim=%d metric=%s over %d vectors in %.1fms",
            method,
            dim,
            metric,
            len(ids),
            built.build_time_ms,
        )
        await self._persist_index_config(dim, metric, plan, built.build_time_ms)
        return built

    async def rebuild_index(self, dim: int, metric: str = "cosine") -> IndexPlan:
        if metric not in SIMILARITY_METRICS:
            raise InvalidInput(f"Unknown similarity metric: {metric}")
        row_count = await self.count(dim)
        plan = self._policy.plan(row_count)
        if plan.method == "exact":
            await self._persist_index_config(dim, metric, plan, 0.0)
            return plan
        self._indexes.pop((dim, metric, plan.method), None)
        built = await self._ensure_index(dim, metric, plan.method)
        return built.plan

    async def _persist_index_config(self, dim: int, metric: str, plan: IndexPlan, build_time_ms: float) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.exec(
                        select(VectorIndexConfig).where(
                            VectorIndexConfig.dim == dim,
                            VectorIndexConfig.metric == metric,
                        )
                    )
                    config = result.scalars().first()
                    if config is None:
                        config = VectorIndexConfig(dim=dim, metric=metric)
                        session.add(config)
                    config.method = plan.method
                    config.params_json = json.dumps(plan.params, sort_keys=True)
                    config.vector_count = plan.row_count
                    config.build_time_ms = build_time_ms
                    config.built_at = utcnow()
        except SQLAlchemyError:
            _LOGGER.warning("Failed to persist index configuration for dim=%d metric=%s", dim, metric, exc_info=True)

    async def index_report(self) -> list[VectorIndexConfig]:
        async with self._session_factory() as session:
            result = await session.exec(select(VectorIndexConfig).order_by(VectorIndexConfig.dim, VectorIndexConfig.metric))
            return list(result.scalars().all())

    async def _partition_counts(self) -> dict[int, int]:
        async with self._session_factory() as session:
            result = await session.exec(select(DocumentEmbedding.dim, func.count()).group_by(DocumentEmbedding.dim))
            return {int(dim): int(count) for dim, count in result.all()}

    async def index_health(self) -> list[IndexHealth]:
        """Compare each persisted index configuration with the rows its partition holds now."""

        configs = await self.index_report()
        counts = await self._partition_counts()
        report: list[IndexHealth] = []
        for config in configs:
            current = counts.get(config.dim, 0)
            recommended = self._policy.method_for(current)
            drift = abs(current - config.vector_count) / max(config.vector_count, 1)
            stale = recommended != config.method or (
                config.method != "exact" and drift > self._settings.index_drift_threshold
            )
            report.append(
                IndexHealth(
                    dim=config.dim,
                    metric=config.metric,
                    method=config.method,
                    recommended_method=recommended,
                    indexed_vectors=config.vector_count,
                    current_vectors=current,
                    drift=round(drift, 6),
                    stale=stale,
                    built_at=config.built_at,
                    build_time_ms=config.build_time_ms,
                )
            )
        return report

    async def optimize_indexes(self, *, apply: bool = True) -> IndexOptimization:
        """Recommend index rebuilds and, when ``apply`` is set, carry out the high-priority ones."""

        threshold = self._settings.index_drift_threshold
        health = await self.index_health()
        recommendations: list[IndexRecommendation] = []
        for entry in health:
            if not entry.stale:
                continue
            if entry.recommended_method != entry.method:
                reason = (
                    f"{entry.current_vectors} vectors call for {entry.recommended_method} search "
                    f"but the index is {entry.method}"
                )
                priority = "high"
            else:
                reason = f"{entry.drift:.0%} of the partition changed since the last build"
                priority = "high" if entry.drift > 2 * threshold else "medium"
            recommendations.append(
                IndexRecommendation(dim=entry.dim, metric=entry.metric, action="rebuild", reason=reason, priority=priority)
            )

        covered = {entry.dim for entry in health}
        metric = self._settings.default_similarity_metric
        for dim, count in sorted((await self._partition_counts()).items()):
            if dim in covered or self._policy.method_for(count) == "exact":
                continue
            recommendations.append(
                IndexRecommendation(
                    dim=dim,
                    metric=metric,
                    action="create",
                    reason=f"{count} vectors are searched without an index",
                    priority="high",
                )
            )

        applied: list[str] = []
        if apply:
            for recommendation in recommendations:
                if recommendation.priority not in ("high", "critical"):
                    continue
                try:
                    plan = await self.rebuild_index(recommendation.dim, recommendation.metric)
                except (SQLAlchemyError, RuntimeError) as exc:
                    _LOGGER.warning(
                        "Failed to %s index for dim=%d metric=%s: %s",
                        recommendation.action,
                        recommendation.dim,
                        recommendation.metric,
                        exc,
                    )
                    continue
                verb = "Created" if recommendation.action == "create" else "Rebuilt"
                applied.append(f"{verb} {plan.method} index for dim={recommendation.dim} metric={recommendation.metric}")
        _LOGGER.info("Index optimisation: %d recommendations, %d applied", len(recommendations), len(applied))
        return IndexOptimization(recommendations=recommendations, applied=applied)

    @staticmethod
    def _to_result(row: DocumentEmbedding, score: float, include_metadata: bool) -> VectorSearchResult:
        return VectorSearchResult(
            id=row.id,
            document_id=row.document_id,
            document_type=row.document_type,
            content=row.content,
            language=row.language,
            similarity=float(score),
            metadata=row.metadata_dict if include_metadata else None,
            embedding_model=row.embedding_model,
            created_at=row.created_at,
            confidence=row.confidence_score,
        )

    async def get_document(self, document_type: str, document_id: str) -> Optional[DocumentEmbedding]:
        async with self._session_factory() as session:
            result = await session.exec(
                select(DocumentEmbedding).where(
                    DocumentEmbedding.document_type == document_type,
                    DocumentEmbedding.document_id == document_id,
                )
            )
            return result.scalars().first()

    async def count(self, dim: int | None = None) -> int:
        stmt = select(func.count()).select_from(DocumentEmbedding)
        if dim is not None:
            stmt = stmt.where(DocumentEmbedding.dim == dim)
        async with self._session_factory() as session:
            result = await session.exec(stmt)
            return int(result.scalar_one())

    async def get_statistics(self) -> EmbeddingStatistics:
        async with self._session_factory() as session:
            total_result = await session.exec(select(func.count()).select_from(DocumentEmbedding))
            total = int(total_result.scalar_one())

            breakdowns: dict[str, dict[str, int]] = {}
            for name, column in (
                ("by_type", DocumentEmbedding.document_type),
                ("by_language", DocumentEmbedding.language),
                ("by_model", DocumentEmbedding.embedding_model),
            ):
                rows = await session.exec(select(column, func.count()).group_by(column))
                breakdowns[name] = {str(row[0]): int(row[1]) for row in rows.all()}

            summary = await session.exec(
                select(
                    func.avg(DocumentEmbedding.dim),
                    func.min(DocumentEmbedding.created_at),
                    func.max(DocumentEmbedding.created_at),
                )
            )
            average_dim, oldest, newest = summary.one()

        return EmbeddingStatistics(
            total_embeddings=total,
            by_type=breakdowns["by_type"],
            by_language=breakdowns["by_language"],
            by_model=breakdowns["by_model"],
            average_dimension=int(round(float(average_dim))) if average_dim is not None else 0,
            oldest=oldest,
            newest=newest,
        )

    async def health_check(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.exec(select(func.count()).select_from(DocumentEmbedding))
        except Exception:
            _LOGGER.error("Vector store health check failed", exc_info=True)
            return False
        return True

    def index_cache_info(self) -> dict[str, Any]:
        return {
            "generation": self._generation,
            "indexes": [
                {"dim": dim, "metric": metric, "method": method, "vectors": len(built.ids)}
                for (dim, metric, method), built in self._indexes.items()
            ],
        }
