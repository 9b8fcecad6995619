"""Document kinds and their metadata payloads.

The platform feeds a closed set of document kinds into the index. Each kind
carries its own metadata shape, discriminated by ``kind`` so callers resolve
them with ``match`` instead of probing arbitrary dictionaries.

Classes:
    DocumentType: Enumeration of indexable document kinds.
    QuestionnaireResponseMetadata, QuestionMetadata, WorkshopContentMetadata,
    AnalysisResultMetadata, UserProfileMetadata: Per-kind metadata payloads.
    DocumentSource: Human-facing provenance (title/url/author/date) extracted from metadata.
    DocumentChange: One item of the document change feed emitted by the CRUD layer.

Functions:
    parse_document_metadata(document_type, payload): Validate raw metadata for a kind.
    describe_source(metadata): Extract provenance fields from a validated payload.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from workshop_rag.core.errors import InvalidInput


class DocumentType(str, Enum):
    QUESTIONNAIRE_RESPONSE = "questionnaire_response"
    QUESTION = "question"
    WORKSHOP_CONTENT = "workshop_content"
    ANALYSIS_RESULT = "analysis_result"
    USER_PROFILE = "user_profile"


class _MetadataBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    workshop_id: Optional[str] = None
    user_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    date: Optional[datetime] = None


class QuestionnaireResponseMetadata(_MetadataBase):
    kind: Literal["questionnaire_response"] = "questionnaire_response"
    questionnaire_id: Optional[str] = None
    question_id: Optional[str] = None
    respondent_id: Optional[str] = None
    answer_type: Optional[Literal["text", "choice", "scale"]] = None


class QuestionMetadata(_MetadataBase):
    kind: Literal["question"] = "question"
    questionnaire_id: Optional[str] = None
    question_type: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)


class WorkshopContentMetadata(_MetadataBase):
    kind: Literal["workshop_content"] = "workshop_content"
    section: Optional[str] = None
    author: Optional[str] = None
    url: Optional[str] = None


class AnalysisResultMetadata(_MetadataBase):
    kind: Literal["analysis_result"] = "analysis_result"
    analysis_type: Optional[str] = None
    generated_by: Optional[str] = None
    score: Optional[float] = None


class UserProfileMetadata(_MetadataBase):
    kind: Literal["user_profile"] = "user_profile"
    display_name: Optional[str] = None
    role: Optional[str] = None


DocumentMetadata = Annotated[
    Union[
        QuestionnaireResponseMetadata,
        QuestionMetadata,
        WorkshopContentMetadata,
        AnalysisResultMetadata,
        UserProfileMetadata,
    ],
    Field(discriminator="kind"),
]

_METADATA_ADAPTER: TypeAdapter[Any] = TypeAdapter(DocumentMetadata)


class DocumentSource(BaseModel):
    title: Optional[str] = None
    url: Optional[str] = None
    author: Optional[str] = None
    date: Optional[datetime] = None


class DocumentChange(BaseModel):
    document_id: str = Field(min_length=1)
    document_type: DocumentType
    content: str
    language: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: Literal["low", "medium", "high"] = "medium"
    deleted: bool = False


def resolve_document_type(document_type: str | DocumentType) -> DocumentType:
    if isinstance(document_type, DocumentType):
        return document_type
    try:
        return DocumentType(document_type)
    except ValueError as exc:
        allowed = ", ".join(kind.value for kind in DocumentType)
        raise InvalidInput(f"Unknown document type {document_type!r}; expected one of: {allowed}") from exc


def parse_document_metadata(document_type: str | DocumentType, payload: Mapping[str, Any] | None):
    kind = resolve_document_type(document_type)
    data = dict(payload or {})
    supplied_kind = data.get("kind")
    if supplied_kind is not None and supplied_kind != kind.value:
        raise InvalidInput(f"Metadata kind {supplied_kind!r} does not match document type {kind.value!r}")
    data["kind"] = kind.value
    try:
        return _METADATA_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise InvalidInput(f"Invalid metadata for {kind.value}: {exc}") from exc


def describe_source(metadata: Any) -> DocumentSource | None:
    match metadata:
        case WorkshopContentMetadata(title=title, url=url, author=author, date=date):
            source = DocumentSource(title=title, url=url, author=author, date=date)
        case QuestionnaireResponseMetadata(title=title, respondent_id=respondent, date=date):
            source = DocumentSource(title=title, author=respondent, date=date)
        case QuestionMetadata(title=title, date=date):
            source = DocumentSource(title=title, date=date)
        case AnalysisResultMetadata(title=title, generated_by=generated_by, date=date):
            source = DocumentSource(title=title, author=generated_by, date=date)
        case UserProfileMetadata(display_name=name, title=title, date=date):
            source = DocumentSource(title=title or name, date=date)
        case _:
            return None
    if not any((source.title, source.url, source.author, source.date)):
        return None
    return source
