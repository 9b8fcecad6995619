"""Vector index metadata model."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from workshop_rag.db.types import UTCDateTime
from workshop_rag.utils.timing import utcnow


class VectorIndexConfig(SQLModel, table=True):
    __tablename__ = "vector_index_configs"
    __table_args__ = (UniqueConstraint("dim", "metric", name="uq_vector_index_dim_metric"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    dim: int = Field(index=True)
    metric: str = Field(default="cosine")
    method: str = Field(default="exact")
    params_json: Optional[str] = Field(default=None, sa_column=Column(Text))
    vector_count: int = Field(default=0)
    build_time_ms: float = Field(default=0.0)
    built_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
