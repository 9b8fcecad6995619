"""Pydantic schemas for embedding generation."""

from __future__ import annotations

from typing import Callable, Optional

from pydantic import BaseModel, Field

ProgressCallback = Callable[[int, int], None]


class LanguageAlternative(BaseModel):
    language: str
    confidence: float


class LanguageDetection(BaseModel):
    language: str
    confidence: float = Field(ge=0.0, le=1.0)
    alternatives: list[LanguageAlternative] = Field(default_factory=list)


class EmbeddingResult(BaseModel):
    vector: list[float]
    model: str
    dimensions: int
    tokens: int
    cost: float
    processing_time: float
    confidence: float
    language: str
    cached: bool = False


class BatchEmbeddingOptions(BaseModel):
    model: Optional[str] = None
    batch_size: Optional[int] = Field(default=None, ge=1)
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_delay: Optional[float] = Field(default=None, ge=0.0)
    timeout: Optional[float] = Field(default=None, gt=0.0)
    skip_cache: bool = False
    language: Optional[str] = None
    detect_language: bool = True
    on_progress: Optional[ProgressCallback] = None


class CostDetail(BaseModel):
    text: str
    token_count: int
    cost: float


class CostEstimate(BaseModel):
    tokens: int
    cost: float
    details: list[CostDetail] = Field(default_factory=list)


class EmbeddingHealth(BaseModel):
    provider: bool
    cache_size: int
    cache_max_size: int
    models: list[str]
