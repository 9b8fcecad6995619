from datetime import timedelta
from uuid import uuid4

import pytest

from workshop_rag.schemas.documents import DocumentSource
from workshop_rag.schemas.rag import (
    ContextWindowConfig,
    PromptFormatOptions,
    RAGContextDocument,
    RankingOptions,
    RankingWeights,
)
from workshop_rag.services.context import (
    PROMPT_SUFFIX,
    build_context_window,
    deduplicate,
    extract_source,
    rank_documents,
    render_augmented_prompt,
    truncate_text,
)
from workshop_rag.utils.text import estimate_tokens
from workshop_rag.utils.timing import utcnow

NOW = utcnow()


def make_doc(document_id: str, content: str, *, similarity: float = 0.9, age_days: float = 0.0, **overrides):
    payload = {
        "id": uuid4(),
        "document_type": "question",
        "document_id": document_id,
        "content": content,
        "language": "en",
        "similarity": similarity,
        "relevance": similarity,
        "created_at": NOW - timedelta(days=age_days),
    }
    payload.update(overrides)
    return RAGContextDocument(**payload)


def distinct_text(seed: int, characters: int) -> str:
    words = []
    index = 0
    while len(" ".join(words)) < characters:
        words.append(f"term{seed}x{index}")
        index += 1
    return " ".join(words)[:characters]


@pytest.mark.parametrize("strategy", ["head", "tail", "middle", "smart"])
@pytest.mark.parametrize("max_tokens", [1, 50, 120, 333, 1000])
def test_context_window_never_exceeds_token_budget(strategy, max_tokens):
    documents = [make_doc(f"d{i}", distinct_text(i, 300 + 97 * i)) for i in range(12)]
    config = ContextWindowConfig(
        max_tokens=max_tokens,
        max_documents=10,
        min_chunk_size=20,
        truncation_strategy=strategy,
    )

    window = build_context_window(documents, config)

    assert window.token_count <= max_tokens
    assert sum(estimate_tokens(doc.content) for doc in window.documents) == window.token_count
    assert len(window.documents) <= 10


def test_context_window_truncates_last_document_when_room_remains():
    documents = [make_doc(f"d{i}", distinct_text(i, 800)) for i in range(5)]
    config = ContextWindowConfig(max_tokens=500, max_documents=10, min_chunk_size=50)

    window = build_context_window(documents, config)

    assert [doc.document_id for doc in window.documents] == ["d0", "d1", "d2"]
    assert window.truncated is True
    assert window.documents[-1].truncated is True
    assert window.documents[0].truncated is False
    assert window.token_count <= 500


def test_context_window_stops_when_remaining_budget_is_small():
    documents = [make_doc(f"d{i}", distinct_text(i, 800)) for i in range(3)]
    config = ContextWindowConfig(max_tokens=250, max_documents=10, min_chunk_size=100)

    window = build_context_window(documents, config)

    assert [doc.document_id for doc in window.documents] == ["d0"]
    assert window.truncated is False


def test_context_window_respects_document_limit_and_chunk_cap():
    documents = [make_doc(f"d{i}", distinct_text(i, 400)) for i in range(6)]
    config = ContextWindowConfig(max_tokens=4000, max_documents=3, max_chunk_size=40)

    window = build_context_window(documents, config)

    assert len(window.documents) == 3
    assert all(doc.token_count <= 40 for doc in window.documents)
    assert window.truncated is True


def test_deduplicate_drops_repeated_identity_and_content():
    sentence = "The facilitator kept every breakout session focused and on schedule today."
    documents = [
        make_doc("a", sentence),
        make_doc("a", "completely different text about venue logistics"),
        make_doc("b", sentence.upper()),
        make_doc("c", sentence.replace(".", "!").replace("focused", "focused,")),
        make_doc("d", "Catering arrived late but the coffee was excellent."),
    ]

    unique = deduplicate(documents)

    assert [doc.document_id for doc in unique] == ["a", "d"]


def test_smart_truncation_stops_at_sentence_boundary():
    text = "A" * 35 + ". The rest of this text keeps going well past the budget."
    truncated = truncate_text(text, 10, "smart")

    assert truncated == "A" * 35 + "."
    assert estimate_tokens(truncated) <= 10


def test_smart_truncation_ignores_decimal_points():
    text = "The opening keynote ran long but nobody minded. Score 4.75 and more notes follow here"
    truncated = truncate_text(text, 15, "smart")

    assert truncated == "The opening keynote ran long but nobody minded."

    early = "The venue was fine. We measured a score of 4.75 overall and the facilitators agreed on it"
    cut = truncate_text(early, 12, "smart")

    assert not cut.endswith("4.")
    assert cut == early[:45] + "..."


def test_smart_truncation_falls_back_to_hard_cut():
    text = "word " * 40
    truncated = truncate_text(text, 10, "smart")

    assert truncated.endswith("...")
    assert len(truncated) == 40


def test_head_tail_and_middle_truncation_keep_markers_inside_budget():
    text = "".join(chr(ord("a") + i % 26) for i in range(200))

    head = truncate_text(text, 10, "head")
    tail = truncate_text(text, 10, "tail")
    middle = truncate_text(text, 10, "middle")

    assert head == text[:37] + "..."
    assert tail == "..." + text[-37:]
    assert middle.startswith(text[:19]) and middle.endswith(text[-18:]) and "..." in middle
    assert all(len(value) <= 40 for value in (head, tail, middle))
    assert truncate_text("short", 10, "head") == "short"


def test_ranking_by_similarity_is_monotonic():
    documents = [
        make_doc("low", "x", similarity=0.6),
        make_doc("high", "y", similarity=0.95),
        make_doc("mid", "z", similarity=0.75),
    ]
    ranked = rank_documents(documents, RankingOptions(weights=RankingWeights(similarity=2.0)), now=NOW)

    assert [doc.document_id for doc in ranked] == ["high", "mid", "low"]
    assert ranked[0].relevance == pytest.approx(1.9)


def test_ranking_ties_prefer_newest_and_default_uses_similarity():
    documents = [
        make_doc("old", "x", similarity=0.8, age_days=10),
        make_doc("new", "y", similarity=0.8, age_days=1),
    ]
    ranked = rank_documents(documents, None, now=NOW)

    assert [doc.document_id for doc in ranked] == ["new", "old"]
    assert ranked[0].relevance == pytest.approx(0.8)


def test_recency_and_confidence_weights_blend_into_relevance():
    documents = [
        make_doc("stale", "x", similarity=0.9, age_days=90, confidence=0.7),
        make_doc("fresh", "y", similarity=0.7, age_days=0, confidence=0.9),
    ]
    weights = RankingWeights(similarity=0.5, recency=0.5, relevance=0.5)
    ranked = rank_documents(documents, RankingOptions(method="hybrid", weights=weights), now=NOW)

    assert [doc.document_id for doc in ranked] == ["fresh", "stale"]
    assert ranked[0].relevance == pytest.approx(0.35 + 0.5 + 0.45)

    by_recency = rank_documents(documents, RankingOptions(method="recency"), now=NOW)
    assert by_recency[0].document_id == "fresh"


def test_extract_source_resolves_document_kinds():
    source = extract_source("workshop_content", {"kind": "workshop_content", "title": "Intro", "author": "Ada"})
    assert source == DocumentSource(title="Intro", author="Ada")

    profile = extract_source("user_profile", {"display_name": "Grace"})
    assert profile is not None and profile.title == "Grace"

    assert extract_source("question", {}) is None
    assert extract_source("legacy_type", {"title": "Old"}) == DocumentSource(title="Old")


def prompt_doc(**overrides):
    return make_doc(
        "w1",
        "Hello world",
        document_type="workshop_content",
        metadata={"kind": "workshop_content", "title": "Intro"},
        source=DocumentSource(title="Intro"),
        **overrides,
    )


def test_paragraph_prompt_format():
    prompt = render_augmented_prompt("Base", [prompt_doc()])
    assert prompt == (
        "Base\n\nContext Information:\n1. Hello world (Source: Intro)\n\n"
        "Based on the above context, please provide a comprehensive response."
    )


def test_bullet_prompt_format():
    prompt = render_augmented_prompt("Base", [prompt_doc()], PromptFormatOptions(format_style="bullet"))
    assert prompt == (
        "Base\n\nContext Information:\n\n1. [Intro] Hello world\n"
        "   Source: workshop_content (Similarity: 0.900)\n\n" + PROMPT_SUFFIX
    )


def test_structured_prompt_format():
    bare = render_augmented_prompt(
        "Base",
        [prompt_doc()],
        PromptFormatOptions(format_style="structured", include_metadata=False, context_header="Sources"),
    )
    assert bare == (
        "Base\n\nSources:\n\n```\n\n[Document 1]\nType: workshop_content\nContent: Hello world\n\n```\n\n\n"
        + PROMPT_SUFFIX
    )

    detailed = render_augmented_prompt("Base", [prompt_doc()], PromptFormatOptions(format_style="structured"))
    assert "Similarity: 0.900\n" in detailed
    assert '"title": "Intro"' in detailed


def test_empty_context_prompt():
    prompt = render_augmented_prompt("Base", [])
    assert prompt == "Base\n\nContext Information:\nNo relevant context found.\n\n\n" + PROMPT_SUFFIX
