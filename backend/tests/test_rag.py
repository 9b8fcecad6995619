import json

import pytest
from sqlalchemy import select

from workshop_rag.core.errors import DocumentNotFound, InvalidInput
from workshop_rag.models import ContextWindowRecord, SearchQueryRecord
from workshop_rag.schemas.documents import DocumentChange
from workshop_rag.schemas.rag import AnalyticsOptions, PromptFormatOptions, RAGFilters, RAGQueryOptions


def change(document_id: str, content: str, document_type: str = "questionnaire_response", **metadata):
    return DocumentChange(
        document_id=document_id,
        document_type=document_type,
        content=content,
        metadata=metadata,
    )


@pytest.mark.asyncio
async def test_pacing_feedback_ranks_matching_response_first(core):
    await core.store_document_embeddings(
        [
            change("q1", "I loved the workshop pacing"),
            change("q2", "The venue was too noisy"),
        ]
    )

    result = await core.rag_query(
        "workshop feedback about pacing",
        RAGQueryOptions(min_similarity_threshold=0.5, max_context_documents=5),
    )

    ids = [doc.document_id for doc in result.context_documents]
    assert ids[0] == "q1"
    assert "q2" not in ids
    assert result.context_documents[0].similarity == pytest.approx(2 / (2 * 3**0.5), abs=1e-4)
    assert result.total_results == len(ids)
    assert result.average_similarity == pytest.approx(result.context_documents[0].similarity)
    assert result.context_window.documents == len(ids)
    assert result.context_window.size == sum(doc.token_count for doc in result.context_documents)
    assert result.performance.total_time >= result.performance.search_time
    assert len(result.query_embedding) == 128
    assert result.analytics is None


@pytest.mark.asyncio
async def test_query_respects_context_budget(core):
    long_text = " ".join(f"pacing{i}" for i in range(300))
    await core.store_document_embeddings(
        [
            change("long-1", "workshop pacing " + long_text),
            change("long-2", "workshop pacing notes " + long_text.replace("pacing", "tempo")),
        ]
    )

    result = await core.rag_query(
        "workshop pacing",
        RAGQueryOptions(min_similarity_threshold=0.0, context_window=150),
    )

    assert result.context_window.size <= 150
    assert result.context_window.truncated is True


@pytest.mark.asyncio
async def test_augmented_prompt_uses_context_documents(core):
    await core.store_document_embeddings([change("q1", "I loved the workshop pacing")])
    result = await core.rag_query("workshop pacing", RAGQueryOptions(min_similarity_threshold=0.5))

    prompt = core.generate_augmented_prompt("Summarise the feedback.", result)
    assert prompt.startswith("Summarise the feedback.\n\nContext Information:\n1. I loved the workshop pacing")
    assert prompt.endswith("Based on the above context, please provide a comprehensive response.")

    bullet = core.generate_augmented_prompt(
        "Summarise.",
        result,
        PromptFormatOptions(format_style="bullet", include_metadata=False),
    )
    assert "\n1. I loved the workshop pacing" in bullet
    assert "Similarity" not in bullet


@pytest.mark.asyncio
async def test_find_similar_documents_excludes_source(core):
    await core.store_document_embeddings(
        [
            change("q1", "I loved the workshop pacing"),
            change("q3", "The workshop pacing felt rushed"),
            change("q2", "The venue was too noisy"),
        ]
    )

    result = await core.find_similar_documents("q1", "questionnaire_response")

    ids = [doc.document_id for doc in result.context_documents]
    assert ids == ["q3"]

    with pytest.raises(DocumentNotFound):
        await core.find_similar_documents("missing", "questionnaire_response")


@pytest.mark.asyncio
async def test_workshop_context_filters_by_workshop_and_kind(core):
    await core.store_document_embeddings(
        [
            change("r1", "Pacing feedback workshop alpha", workshop_id="w1"),
            change("r2", "Pacing feedback workshop beta", workshop_id="w2"),
            change("u1", "Pacing feedback workshop gamma", document_type="user_profile", workshop_id="w1"),
        ]
    )

    result = await core.rag.get_context_for_workshop("w1", "pacing feedback workshop")

    assert [doc.document_id for doc in result.context_documents] == ["r1"]
    assert result.context_documents[0].metadata["workshop_id"] == "w1"


@pytest.mark.asyncio
async def test_filters_and_metadata_toggle(core):
    await core.store_document_embeddings(
        [
            change("en-1", "Workshop pacing review", user_id="u1"),
            change("en-2", "Workshop pacing review again", user_id="u2"),
        ]
    )

    result = await core.rag_query(
        "workshop pacing review",
        RAGQueryOptions(
            min_similarity_threshold=0.5,
            include_metadata=False,
            filters=RAGFilters(user_id="u2"),
        ),
    )

    assert [doc.document_id for doc in result.context_documents] == ["en-2"]
    assert result.context_documents[0].metadata is None


@pytest.mark.asyncio
async def test_analytics_tracking_and_statistics(core):
    await core.store_document_embeddings([change("q1", "I loved the workshop pacing")])

    result = await core.rag_query(
        "workshop pacing",
        RAGQueryOptions(
            min_similarity_threshold=0.5,
            analytics=AnalyticsOptions(track_query=True, store_context_window=True, user_id="u1", session_id="s1"),
        ),
    )
    await core.rag_query("workshop pacing", RAGQueryOptions(type="recommendation", analytics=AnalyticsOptions(track_query=True)))

    assert result.analytics is not None
    assert result.analytics.query_id is not None
    assert result.analytics.context_window_id is not None

    async with core.session_factory() as session:
        queries = (await session.exec(select(SearchQueryRecord))).scalars().all()
        windows = (await session.exec(select(ContextWindowRecord))).scalars().all()
    assert len(queries) == 2
    assert len(windows) == 1
    assert windows[0].session_id == "s1"
    assert json.loads(windows[0].documents_json)[0]["document_id"] == "q1"

    stats = await core.get_rag_statistics()
    assert stats.total_queries == 2
    assert stats.popular_queries[0].query == "workshop pacing"
    assert stats.popular_queries[0].count == 2
    assert set(stats.performance_by_type) == {"semantic_search", "recommendation"}
    assert stats.performance_by_type["semantic_search"].count == 1


@pytest.mark.asyncio
async def test_update_context_config_validates_changes(core):
    updated = core.rag.update_context_config(max_tokens=50, truncation_strategy="head")
    assert updated.max_tokens == 50
    assert core.rag.context_config.truncation_strategy == "head"

    with pytest.raises(InvalidInput):
        core.rag.update_context_config(max_tokenz=10)
    with pytest.raises(InvalidInput):
        core.rag.update_context_config(max_tokens=0)
    assert core.rag.context_config.max_tokens == 50


@pytest.mark.asyncio
async def test_empty_query_is_rejected(core):
    with pytest.raises(InvalidInput):
        await core.rag_query("   ")
