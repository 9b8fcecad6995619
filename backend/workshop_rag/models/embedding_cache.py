"""Persistent embedding cache model for reusing vectors across processes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Index, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel

from workshop_rag.db.types import UTCDateTime
from workshop_rag.utils.timing import utcnow


class EmbeddingCacheRecord(SQLModel, table=True):
    __tablename__ = "embedding_cache"
    __table_args__ = (
        UniqueConstraint(
            "content_hash",
            "model_id",
            "preproc_version",
            name="uq_embedding_cache_hash_model_preproc",
        ),
        Index(
            "ix_embedding_cache_hash_model_preproc",
            "content_hash",
            "model_id",
            "preproc_version",
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    content_hash: str = Field(index=True)
    model_id: str = Field(index=True)
    preproc_version: str = Field(default="norm-nfkc-v1", index=True)
    provider: Optional[str] = Field(default=None, index=True)
    language: str = Field(default="en")
    vector: bytes = Field(sa_column=Column(LargeBinary))
    dim: int
    token_count: int = Field(default=0)
    cost: float = Field(default=0.0)
    confidence: float = Field(default=0.0)
    hit_count: int = Field(default=0, index=True)
    last_accessed_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, index=True)
