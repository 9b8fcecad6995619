"""In-process performance monitoring for embedding and search operations.

Classes:
    AlertRule: Threshold on one aggregated metric, e.g. ``search.average_time_ms > 1000``.
    PerformanceMonitor: Bounded event history with windowed aggregates, alerts and a status verdict.

Functions:
    alert_rules_from_settings(settings): The default rule set with thresholds taken from settings.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from workshop_rag.core.config import Settings
from workshop_rag.schemas.metrics import (
    AlertSeverity,
    EmbeddingOperationMetrics,
    IndexHealth,
    PerformanceAlert,
    PerformanceReport,
    SearchOperationMetrics,
    SystemStatus,
)
from workshop_rag.utils.timing import as_utc, utcnow

_LOGGER = logging.getLogger(__name__)

_SLOW_EMBEDDING_MS = 3000.0
_LOW_CACHE_HIT_RATE = 0.5
_DEGRADED_SUCCESS_RATE = 0.95


@dataclass(frozen=True)
class AlertRule:
    metric: str
    operator: str
    threshold: float
    severity: AlertSeverity
    message: str
    action: Optional[str] = None

    def triggered(self, value: float) -> bool:
        if self.operator == ">":
            return value > self.threshold
        return value < self.threshold


def alert_rules_from_settings(settings: Settings) -> tuple[AlertRule, ...]:
    return (
        AlertRule(
            "embedding.average_time_ms",
            ">",
            settings.alert_embedding_time_ms,
            "high",
            f"Embedding operations taking too long (>{settings.alert_embedding_time_ms:.0f}ms)",
            "Check the embedding provider and its rate limits",
        ),
        AlertRule(
            "embedding.success_rate",
            "<",
            settings.alert_embedding_success_rate,
            "critical",
            f"Embedding success rate too low (<{settings.alert_embedding_success_rate:.0%})",
            "Check API keys and provider availability",
        ),
        AlertRule(
            "search.average_time_ms",
            ">",
            settings.alert_search_time_ms,
            "medium",
            f"Search queries taking too long (>{settings.alert_search_time_ms:.0f}ms)",
            "Consider rebuilding or optimising vector indexes",
        ),
        AlertRule(
            "search.average_results",
            "<",
            settings.alert_min_average_results,
            "medium",
            f"Search queries returning too few results (<{settings.alert_min_average_results:g} on average)",
            "Review similarity thresholds and data quality",
        ),
    )


@dataclass(frozen=True)
class _EmbeddingEvent:
    at: datetime
    duration_ms: float
    success: bool
    items: int
    cached: int
    tokens: int
    cost: float


@dataclass(frozen=True)
class _SearchEvent:
    at: datetime
    duration_ms: float
    result_count: int
    average_similarity: float
    method: str


def _in_window(at: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and at < start:
        return False
    if end is not None and at > end:
        return False
    return True


class PerformanceMonitor:
    """Records operation timings and summarises them over an optional time window.

    Only the newest ``history_size`` events of each kind are kept, so reports
    cover recent traffic rather than the whole process lifetime.
    """

    def __init__(
        self,
        *,
        history_size: int = 10000,
        rules: Sequence[AlertRule] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if history_size < 1:
            raise ValueError("history_size must be at least 1")
        self._rules = tuple(rules)
        self._clock = clock
        self._embedding_events: deque[_EmbeddingEvent] = deque(maxlen=history_size)
        self._search_events: deque[_SearchEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> "PerformanceMonitor":
        return cls(
            history_size=settings.metrics_history_size,
            rules=alert_rules_from_settings(settings),
            clock=clock,
        )

    def record_embedding(
        self,
        duration_ms: float,
        *,
        success: bool,
        items: int = 1,
        cached: int = 0,
        tokens: int = 0,
        cost: float = 0.0,
    ) -> None:
        event = _EmbeddingEvent(as_utc(self._clock()), float(duration_ms), success, items, cached, tokens, cost)
        with self._lock:
            self._embedding_events.append(event)

    def record_search(
        self,
        duration_ms: float,
        *,
        result_count: int,
        average_similarity: float,
        method: str = "exact",
    ) -> None:
        event = _SearchEvent(as_utc(self._clock()), float(duration_ms), result_count, float(average_similarity), method)
        with self._lock:
            self._search_events.append(event)

    def _select(self, events: Iterable, start: datetime | None, end: datetime | None) -> list:
        lower = as_utc(start) if start else None
        upper = as_utc(end) if end else None
        with self._lock:
            return [event for event in events if _in_window(event.at, lower, upper)]

    def embedding_metrics(self, start: datetime | None = None, end: datetime | None = None) -> EmbeddingOperationMetrics:
        events: list[_EmbeddingEvent] = self._select(self._embedding_events, start, end)
        if not events:
            return EmbeddingOperationMetrics()
        succeeded = [event for event in events if event.success]
        items = sum(event.items for event in succeeded)
        return EmbeddingOperationMetrics(
            total_operations=len(events),
            error_count=len(events) - len(succeeded),
            success_rate=len(succeeded) / len(events),
            average_time_ms=sum(event.duration_ms for event in succeeded) / len(succeeded) if succeeded else 0.0,
            total_items=items,
            total_tokens=sum(event.tokens for event in succeeded),
            total_cost=sum(event.cost for event in succeeded),
            cache_hit_rate=sum(event.cached for event in succeeded) / items if items else 0.0,
        )

    def search_metrics(self, start: datetime | None = None, end: datetime | None = None) -> SearchOperationMetrics:
        events: list[_SearchEvent] = self._select(self._search_events, start, end)
        if not events:
            return SearchOperationMetrics()
        by_method: dict[str, int] = {}
        for event in events:
            by_method[event.method] = by_method.get(event.method, 0) + 1
        count = len(events)
        return SearchOperationMetrics(
            total_queries=count,
            average_time_ms=sum(event.duration_ms for event in events) / count,
            average_results=sum(event.result_count for event in events) / count,
            average_similarity=sum(event.average_similarity for event in events) / count,
            by_method=by_method,
        )

    def evaluate_alerts(
        self,
        embedding: EmbeddingOperationMetrics,
        search: SearchOperationMetrics,
    ) -> list[PerformanceAlert]:
        sections = {"embedding": (embedding, embedding.total_operations), "search": (search, search.total_queries)}
        alerts: list[PerformanceAlert] = []
        for rule in self._rules:
            section, _, field = rule.metric.partition(".")
            metrics, volume = sections[section]
            if not volume:
                continue
            value = float(getattr(metrics, field))
            if not rule.triggered(value):
                continue
            _LOGGER.warning(
                "Performance alert: %s (%s=%.3f, threshold %s %.3f)",
                rule.message,
                rule.metric,
                value,
                rule.operator,
                rule.threshold,
            )
            alerts.append(
                PerformanceAlert(
                    metric=rule.metric,
                    value=value,
                    threshold=rule.threshold,
                    operator=rule.operator,
                    severity=rule.severity,
                    message=rule.message,
                    action=rule.action,
                )
            )
        return alerts

    def _status(self, embedding: EmbeddingOperationMetrics, search: SearchOperationMetrics) -> SystemStatus:
        score = 100
        if embedding.total_operations and embedding.success_rate < _DEGRADED_SUCCESS_RATE:
            score -= 30
        for rule in self._rules:
            if rule.metric == "search.average_time_ms" and search.total_queries and rule.triggered(search.average_time_ms):
                score -= 20
            if rule.metric == "embedding.average_time_ms" and embedding.total_operations and rule.triggered(embedding.average_time_ms):
                score -= 15
        if score >= 80:
            return "healthy"
        if score >= 60:
            return "warning"
        return "critical"

    def _recommendations(
        self,
        embedding: EmbeddingOperationMetrics,
        alerts: Sequence[PerformanceAlert],
        indexes: Sequence[IndexHealth],
    ) -> list[str]:
        recommendations: list[str] = []
        if embedding.average_time_ms > _SLOW_EMBEDDING_MS:
            recommendations.append("Consider a faster embedding model or larger batch sizes")
        if embedding.total_items and embedding.cache_hit_rate < _LOW_CACHE_HIT_RATE:
            recommendations.append("Enable the persistent embedding cache or raise the cache size to improve reuse")
        if any(alert.metric == "search.average_time_ms" for alert in alerts):
            recommendations.append("Optimise vector indexes or reduce the search result limit")
        for health in indexes:
            if health.stale:
                recommendations.append(
                    f"Rebuild the {health.recommended_method} index for dim={health.dim} metric={health.metric}"
                )
        return recommendations

    def report(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        indexes: Sequence[IndexHealth] = (),
    ) -> PerformanceReport:
        if start and end and as_utc(start) > as_utc(end):
            raise ValueError("report window start must not be later than its end")
        embedding = self.embedding_metrics(start, end)
        search = self.search_metrics(start, end)
        alerts = self.evaluate_alerts(embedding, search)
        return PerformanceReport(
            start=start,
            end=end,
            embedding=embedding,
            search=search,
            status=self._status(embedding, search),
            alerts=alerts,
            recommendations=self._recommendations(embedding, alerts, indexes),
            indexes=list(indexes),
        )

    def reset(self) -> None:
        with self._lock:
            self._embedding_events.clear()
            self._search_events.clear()
