"""Append-only query analytics and the aggregates derived from it.

Writes are best effort: a failed insert is logged and the caller continues, so
analytics never break a retrieval request.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from workshop_rag.models import ContextWindowRecord, SearchQueryRecord
from workshop_rag.schemas.rag import PopularQuery, RAGContextDocument, RAGStatistics, TypePerformance
from workshop_rag.schemas.search import SearchHistoryEntry, SearchTrend
from workshop_rag.utils.timing import as_utc, utcnow
from workshop_rag.utils.vectors import serialise_vector

_LOGGER = logging.getLogger(__name__)

_POPULAR_QUERY_PREVIEW = 50
_TREND_TOLERANCE = 0.2


def _preview(text: str, length: int = _POPULAR_QUERY_PREVIEW) -> str:
    return text[:length] + ("..." if len(text) > length else "")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class QueryAnalytics:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def record_query(
        self,
        query_text: str,
        *,
        query_vector: Sequence[float] | None = None,
        query_type: str = "semantic_search",
        result_count: int = 0,
        average_similarity: float = 0.0,
        latency_ms: float = 0.0,
        filters: dict[str, Any] | None = None,
        metric: str = "cosine",
        threshold: float | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> Optional[UUID]:
        record = SearchQueryRecord(
            query_text=query_text,
            query_vector=serialise_vector(query_vector) if query_vector is not None else None,
            dim=len(query_vector) if query_vector is not None else 0,
            query_type=query_type,
            result_count=result_count,
            average_similarity=average_similarity,
            latency_ms=latency_ms,
            filters_json=json.dumps(filters, default=str, sort_keys=True) if filters else None,
            metric=metric,
            threshold=threshold if threshold is not None else 0.0,
            user_id=user_id,
            session_id=session_id,
        )
        record_id = record.id
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
        except SQLAlchemyError:
            _LOGGER.warning("Failed to record search query analytics", exc_info=True)
            return None
        return record_id

    async def record_context_window(
        self,
        *,
        session_id: str,
        query_text: str,
        query_type: str,
        documents: Sequence[RAGContextDocument],
        token_count: int,
        truncated: bool,
        user_id: str | None = None,
    ) -> Optional[UUID]:
        documents_payload = [
            {
                "id": str(doc.id),
                "document_type": doc.document_type,
                "document_id": doc.document_id,
                "token_count": doc.token_count,
                "truncated": doc.truncated,
            }
            for doc in documents
        ]
        record = ContextWindowRecord(
            session_id=session_id,
            user_id=user_id,
            query_type=query_type,
            query_text=query_text,
            documents_json=json.dumps(documents_payload),
            relevance_scores_json=json.dumps([round(doc.relevance, 6) for doc in documents]),
            token_count=token_count,
            truncated=truncated,
        )
        record_id = record.id
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
        except SQLAlchemyError:
            _LOGGER.warning("Failed to store context window for session %s", session_id, exc_info=True)
            return None
        return record_id

    async def popular_queries(self, limit: int = 10) -> list[PopularQuery]:
        stmt = (
            select(SearchQueryRecord.query_text, func.count())
            .group_by(SearchQueryRecord.query_text)
            .order_by(func.count().desc(), func.max(SearchQueryRecord.created_at).desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.exec(stmt)
            rows = result.all()
        return [PopularQuery(query=_preview(row[0]), count=int(row[1])) for row in rows]

    async def suggestions(self, partial: str, *, limit: int = 10, user_id: str | None = None) -> list[str]:
        """Prior query texts starting with ``partial``, most frequent first, then most recent."""

        prefix = partial.strip().lower()
        if not prefix:
            return []
        lowered = func.lower(SearchQueryRecord.query_text)
        stmt = (
            select(SearchQueryRecord.query_text, func.count(), func.max(SearchQueryRecord.created_at))
            .where(lowered.like(_escape_like(prefix) + "%", escape="\\"))
            .group_by(SearchQueryRecord.query_text)
        )
        if user_id is not None:
            stmt = stmt.where(SearchQueryRecord.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.exec(stmt)
            rows = result.all()

        # texts differing only in case count as one suggestion
        merged: dict[str, list[Any]] = {}
        for text, count, last_seen in rows:
            key = text.lower()
            entry = merged.get(key)
            if entry is None:
                merged[key] = [text, int(count), last_seen]
                continue
            if last_seen > entry[2]:
                entry[0], entry[2] = text, last_seen
            entry[1] += int(count)
        ranked = sorted(merged.values(), key=lambda item: item[2], reverse=True)
        ranked.sort(key=lambda item: item[1], reverse=True)
        return [item[0] for item in ranked[:limit]]

    async def history(self, user_id: str, *, limit: int = 50, offset: int = 0) -> list[SearchHistoryEntry]:
        stmt = (
            select(SearchQueryRecord)
            .where(SearchQueryRecord.user_id == user_id)
            .order_by(SearchQueryRecord.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.exec(stmt)
            rows = result.scalars().all()
        return [
            SearchHistoryEntry(
                query=row.query_text,
                query_type=row.query_type,
                result_count=row.result_count,
                average_similarity=row.average_similarity,
                timestamp=row.created_at,
            )
            for row in rows
        ]

    async def trends(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 20,
        user_id: str | None = None,
    ) -> list[SearchTrend]:
        """Most frequent queries in ``[start, end]`` with a direction.

        The direction compares the second half of the window against the first
        half; a change of less than 20% is reported as stable.
        """

        end_at = as_utc(end) if end else utcnow()
        start_at = as_utc(start) if start else end_at - timedelta(days=30)
        if start_at > end_at:
            raise ValueError("trend window start must not be later than its end")
        midpoint = start_at + (end_at - start_at) / 2

        stmt = select(
            SearchQueryRecord.query_text,
            SearchQueryRecord.result_count,
            SearchQueryRecord.created_at,
        ).where(SearchQueryRecord.created_at >= start_at, SearchQueryRecord.created_at <= end_at)
        if user_id is not None:
            stmt = stmt.where(SearchQueryRecord.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.exec(stmt)
            rows = result.all()

        buckets: dict[str, dict[str, Any]] = {}
        for text, result_count, created_at in rows:
            bucket = buckets.setdefault(text, {"count": 0, "results": 0, "early": 0, "late": 0})
            bucket["count"] += 1
            bucket["results"] += int(result_count or 0)
            bucket["late" if as_utc(created_at) >= midpoint else "early"] += 1

        trends = []
        for text, bucket in buckets.items():
            early, late = bucket["early"], bucket["late"]
            if late > early * (1 + _TREND_TOLERANCE):
                direction = "up"
            elif late < early * (1 - _TREND_TOLERANCE):
                direction = "down"
            else:
                direction = "stable"
            trends.append(
                SearchTrend(
                    query=text,
                    frequency=bucket["count"],
                    avg_results=bucket["results"] / bucket["count"],
                    trend=direction,
                )
            )
        trends.sort(key=lambda trend: (-trend.frequency, trend.query))
        return trends[:limit]

    async def statistics(self) -> RAGStatistics:
        async with self._session_factory() as session:
            summary = await session.exec(
                select(
                    func.count(),
                    func.avg(SearchQueryRecord.latency_ms),
                    func.avg(SearchQueryRecord.result_count),
                ).select_from(SearchQueryRecord)
            )
            total, avg_latency, avg_results = summary.one()

            by_type = await session.exec(
                select(
                    SearchQueryRecord.query_type,
                    func.count(),
                    func.avg(SearchQueryRecord.latency_ms),
                ).group_by(SearchQueryRecord.query_type)
            )
            performance = {
                str(row[0]): TypePerformance(count=int(row[1]), avg_time=float(row[2] or 0.0))
                for row in by_type.all()
            }

        return RAGStatistics(
            total_queries=int(total or 0),
            avg_response_time=float(avg_latency or 0.0),
            avg_context_documents=float(avg_results or 0.0),
            popular_queries=await self.popular_queries(),
            performance_by_type=performance,
        )

    async def health_check(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.exec(select(func.count()).select_from(SearchQueryRecord))
        except Exception:
            _LOGGER.error("Analytics store health check failed", exc_info=True)
            return False
        return True
