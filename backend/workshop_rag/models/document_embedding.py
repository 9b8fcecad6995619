"""Document embedding persistence model.

Classes:
    DocumentEmbedding: One stored vector per (document_type, document_id) identity with its source text and metadata.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Index, LargeBinary, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from workshop_rag.db.types import UTCDateTime
from workshop_rag.utils.timing import utcnow


class DocumentEmbedding(SQLModel, table=True):
    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("document_type", "document_id", name="uq_document_embeddings_identity"),
        Index("ix_document_embeddings_dim_created", "dim", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    document_type: str = Field(index=True)
    document_id: str = Field(index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    vector: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    dim: int = Field(index=True)
    language: str = Field(default="en", index=True)
    embedding_model: str = Field(index=True)
    metadata_json: Optional[str] = Field(default=None, sa_column=Column(Text))
    confidence_score: Optional[float] = Field(default=None)
    token_count: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def metadata_dict(self) -> dict[str, Any]:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)
