"""Ranking, deduplication, truncation and prompt rendering for RAG context windows.

Everything here is pure and deterministic: the same candidates and config always
produce the same window and the same prompt text.

Functions:
    compute_relevance(...): Weighted blend of similarity, recency and stored confidence.
    rank_documents(documents, ranking, now): Assign relevance and order candidates.
    deduplicate(documents): Drop repeated identities, identical content and near-duplicates.
    truncate_text(text, max_tokens, strategy): Fit text into a token budget, markers included.
    build_context_window(documents, config): Select documents under the token/document budgets.
    render_augmented_prompt(base_prompt, documents, options): Render the context section and suffix.
"""

from __future__ import annotations

import json
import logging
import math
import re
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from workshop_rag.core.errors import InvalidInput
from workshop_rag.schemas.documents import DocumentSource, describe_source, parse_document_metadata
from workshop_rag.schemas.rag import (
    ContextWindow,
    ContextWindowConfig,
    PromptFormatOptions,
    RAGContextDocument,
    RankingOptions,
    RankingWeights,
    TruncationStrategy,
)
from workshop_rag.utils.text import (
    CHARS_PER_TOKEN,
    compute_simhash64,
    content_hash,
    estimate_tokens,
    hamming_distance,
    tokenize_words,
)
from workshop_rag.utils.timing import as_utc

_LOGGER = logging.getLogger(__name__)

ELLIPSIS = "..."
PROMPT_SUFFIX = "Based on the above context, please provide a comprehensive response."
NO_CONTEXT = "No relevant context found.\n"

_SMART_BOUNDARY_RATIO = 0.7
# sentence punctuation counts only when followed by whitespace or the end of the text
_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")
_NEAR_DUPLICATE_BITS = 3
_NEAR_DUPLICATE_MIN_TOKENS = 8

_METHOD_WEIGHTS: dict[str, RankingWeights] = {
    "recency": RankingWeights(similarity=0.0, recency=1.0, relevance=0.0),
    "hybrid": RankingWeights(similarity=0.6, recency=0.2, relevance=0.2),
}


def compute_relevance(
    similarity: float,
    created_at: datetime,
    confidence: Optional[float],
    weights: RankingWeights,
    *,
    now: datetime,
    decay_days: float = 30.0,
) -> float:
    score = similarity * weights.similarity
    if weights.recency > 0:
        age_days = max((as_utc(now) - as_utc(created_at)).total_seconds(), 0.0) / 86400.0
        score += math.exp(-age_days / decay_days) * weights.recency
    if weights.relevance > 0 and confidence is not None:
        score += confidence * weights.relevance
    return score


def resolve_weights(ranking: RankingOptions | None) -> RankingWeights | None:
    if ranking is None:
        return None
    if ranking.weights is not None:
        return ranking.weights
    return _METHOD_WEIGHTS.get(ranking.method)


def rank_documents(
    documents: Iterable[RAGContextDocument],
    ranking: RankingOptions | None,
    *,
    now: datetime,
    decay_days: float = 30.0,
) -> list[RAGContextDocument]:
    """Return documents with ``relevance`` set, best first; ties go to the newest."""

    weights = resolve_weights(ranking)
    scored: list[RAGContextDocument] = []
    for document in documents:
        if weights is None:
            relevance = document.similarity
        else:
            relevance = compute_relevance(
                document.similarity,
                document.created_at,
                document.confidence,
                weights,
                now=now,
                decay_days=decay_days,
            )
        scored.append(document.model_copy(update={"relevance": relevance}))
    scored.sort(key=lambda doc: doc.created_at, reverse=True)
    scored.sort(key=lambda doc: doc.relevance, reverse=True)
    return scored


def extract_source(document_type: str, metadata: Mapping[str, Any] | None) -> Optional[DocumentSource]:
    if not metadata:
        return None
    try:
        payload = parse_document_metadata(document_type, metadata)
    except InvalidInput:
        _LOGGER.debug("Metadata for %s does not match a known document kind", document_type)
        title = metadata.get("title")
        return DocumentSource(title=str(title)) if title else None
    return describe_source(payload)


def deduplicate(documents: Sequence[RAGContextDocument]) -> list[RAGContextDocument]:
    """Keep the first occurrence of each identity, content hash and near-duplicate."""

    seen_identities: set[tuple[str, str]] = set()
    seen_hashes: set[str] = set()
    fingerprints: list[int] = []
    unique: list[RAGContextDocument] = []
    for document in documents:
        identity = (document.document_type, document.document_id)
        if identity in seen_identities:
            continue
        digest = content_hash(document.content)
        if digest in seen_hashes:
            continue
        tokens = tokenize_words(document.content)
        fingerprint = compute_simhash64(tokens) if len(tokens) >= _NEAR_DUPLICATE_MIN_TOKENS else None
        if fingerprint is not None and any(
            hamming_distance(fingerprint, other) <= _NEAR_DUPLICATE_BITS for other in fingerprints
        ):
            continue
        seen_identities.add(identity)
        seen_hashes.add(digest)
        if fingerprint is not None:
            fingerprints.append(fingerprint)
        unique.append(document)
    return unique


def truncate_text(text: str, max_tokens: int, strategy: TruncationStrategy = "smart") -> str:
    """Shorten ``text`` so that ``estimate_tokens(result) <= max_tokens``."""

    max_length = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_length:
        return text
    if max_length <= len(ELLIPSIS):
        return text[:max_length]
    room = max_length - len(ELLIPSIS)

    if strategy == "head":
        return text[:room] + ELLIPSIS
    if strategy == "tail":
        return ELLIPSIS + text[len(text) - room :]
    if strategy == "middle":
        head = room - room // 2
        tail = room // 2
        return text[:head] + ELLIPSIS + (text[len(text) - tail :] if tail else "")

    boundary = -1
    for match in _SENTENCE_END.finditer(text[: max_length + 1]):
        if match.end() <= max_length:
            boundary = match.start()
    if boundary > max_length * _SMART_BOUNDARY_RATIO:
        return text[: boundary + 1]
    return text[:room] + ELLIPSIS


def build_context_window(
    documents: Sequence[RAGContextDocument],
    config: ContextWindowConfig,
) -> ContextWindow:
    selected: list[RAGContextDocument] = []
    token_count = 0
    truncated = False

    for document in deduplicate(documents):
        if len(selected) >= config.max_documents:
            break
        content = document.content
        was_truncated = False
        if config.max_chunk_size is not None and estimate_tokens(content) > config.max_chunk_size:
            content = truncate_text(content, config.max_chunk_size, config.truncation_strategy)
            was_truncated = True
        doc_tokens = estimate_tokens(content)

        if token_count + doc_tokens > config.max_tokens:
            remaining = config.max_tokens - token_count
            if remaining > config.min_chunk_size:
                content = truncate_text(content, remaining, config.truncation_strategy)
                doc_tokens = estimate_tokens(content)
                selected.append(
                    document.model_copy(update={"content": content, "token_count": doc_tokens, "truncated": True})
                )
                token_count += doc_tokens
                truncated = True
            break

        selected.append(
            document.model_copy(update={"content": content, "token_count": doc_tokens, "truncated": was_truncated})
        )
        token_count += doc_tokens
        truncated = truncated or was_truncated

    return ContextWindow(documents=selected, token_count=token_count, truncated=truncated)


def _render_bullet(documents: Sequence[RAGContextDocument], include_metadata: bool) -> str:
    entries = []
    for index, doc in enumerate(documents, start=1):
        entry = f"\n{index}. "
        if doc.source and doc.source.title:
            entry += f"[{doc.source.title}] "
        entry += doc.content
        if include_metadata:
            entry += f"\n   Source: {doc.document_type} (Similarity: {doc.similarity:.3f})"
        entries.append(entry)
    return "\n".join(entries)


def _render_structured(documents: Sequence[RAGContextDocument], include_metadata: bool) -> str:
    section = "\n```\n"
    for index, doc in enumerate(documents, start=1):
        section += f"\n[Document {index}]\n"
        section += f"Type: {doc.document_type}\n"
        section += f"Content: {doc.content}\n"
        if include_metadata:
            section += f"Similarity: {doc.similarity:.3f}\n"
            if doc.metadata:
                rendered = json.dumps(doc.metadata, indent=2, sort_keys=True, default=str, ensure_ascii=False)
                section += f"Metadata: {rendered}\n"
    return section + "\n```\n"


def _render_paragraph(documents: Sequence[RAGContextDocument], include_metadata: bool) -> str:
    paragraphs = []
    for index, doc in enumerate(documents, start=1):
        paragraph = f"{index}. {doc.content}"
        if include_metadata and doc.source and doc.source.title:
            paragraph += f" (Source: {doc.source.title})"
        paragraphs.append(paragraph)
    return "\n\n".join(paragraphs)


def render_augmented_prompt(
    base_prompt: str,
    documents: Sequence[RAGContextDocument],
    options: PromptFormatOptions | None = None,
) -> str:
    opts = options or PromptFormatOptions()
    section = f"\n\n{opts.context_header}:\n"
    if not documents:
        section += NO_CONTEXT
    elif opts.format_style == "bullet":
        section += _render_bullet(documents, opts.include_metadata)
    elif opts.format_style == "structured":
        section += _render_structured(documents, opts.include_metadata)
    else:
        section += _render_paragraph(documents, opts.include_metadata)
    return f"{base_prompt}{section}\n\n{PROMPT_SUFFIX}"
