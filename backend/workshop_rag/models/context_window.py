"""Audit record for context windows handed to a downstream model."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

from workshop_rag.db.types import UTCDateTime
from workshop_rag.utils.timing import utcnow


class ContextWindowRecord(SQLModel, table=True):
    __tablename__ = "rag_context_windows"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    session_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    query_type: str = Field(index=True)
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    documents_json: str = Field(sa_column=Column(Text, nullable=False))
    relevance_scores_json: Optional[str] = Field(default=None, sa_column=Column(Text))
    token_count: int = Field(default=0)
    truncated: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
