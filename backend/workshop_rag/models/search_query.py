"""Append-only analytics record for similarity searches."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, LargeBinary, Text
from sqlmodel import Field, SQLModel

from workshop_rag.db.types import UTCDateTime
from workshop_rag.utils.timing import utcnow


class SearchQueryRecord(SQLModel, table=True):
    __tablename__ = "vector_search_queries"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    query_vector: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    dim: int = Field(default=0)
    query_type: str = Field(default="semantic_search", index=True)
    result_count: int = Field(default=0)
    average_similarity: float = Field(default=0.0)
    latency_ms: float = Field(default=0.0, index=True)
    filters_json: Optional[str] = Field(default=None, sa_column=Column(Text))
    metric: str = Field(default="cosine")
    threshold: float = Field(default=0.0)
    user_id: Optional[str] = Field(default=None, index=True)
    session_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
