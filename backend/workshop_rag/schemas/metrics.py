"""Pydantic schemas for performance monitoring and vector index upkeep."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from workshop_rag.schemas.vector import IndexMethod

AlertSeverity = Literal["low", "medium", "high", "critical"]
SystemStatus = Literal["healthy", "warning", "critical"]


class EmbeddingOperationMetrics(BaseModel):
    total_operations: int = 0
    error_count: int = 0
    success_rate: float = 1.0
    average_time_ms: float = 0.0
    total_items: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    cache_hit_rate: float = 0.0


class SearchOperationMetrics(BaseModel):
    total_queries: int = 0
    average_time_ms: float = 0.0
    average_results: float = 0.0
    average_similarity: float = 0.0
    by_method: dict[str, int] = Field(default_factory=dict)


class PerformanceAlert(BaseModel):
    metric: str
    value: float
    threshold: float
    operator: Literal[">", "<"]
    severity: AlertSeverity
    message: str
    action: Optional[str] = None


class IndexHealth(BaseModel):
    dim: int
    metric: str
    method: IndexMethod
    recommended_method: IndexMethod
    indexed_vectors: int
    current_vectors: int
    drift: float
    stale: bool
    built_at: Optional[datetime] = None
    build_time_ms: float = 0.0


class IndexRecommendation(BaseModel):
    dim: int
    metric: str
    action: Literal["create", "rebuild"]
    reason: str
    priority: AlertSeverity


class IndexOptimization(BaseModel):
    recommendations: list[IndexRecommendation] = Field(default_factory=list)
    applied: list[str] = Field(default_factory=list)


class PerformanceReport(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    embedding: EmbeddingOperationMetrics
    search: SearchOperationMetrics
    status: SystemStatus
    alerts: list[PerformanceAlert] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    indexes: list[IndexHealth] = Field(default_factory=list)
