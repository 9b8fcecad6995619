from datetime import timedelta

import pytest

from workshop_rag.core.errors import InvalidInput
from workshop_rag.schemas.documents import DocumentChange
from workshop_rag.schemas.search import (
    AdvancedSearchFilters,
    SearchPagination,
    SemanticSearchOptions,
    TextFilters,
)
from workshop_rag.services.search import date_bucket, keyword_scores
from workshop_rag.utils.timing import utcnow


async def seed(core) -> None:
    await core.store_document_embeddings(
        [
            DocumentChange(
                document_id="r1",
                document_type="questionnaire_response",
                content="Workshop pacing felt great overall",
                language="en",
                metadata={"workshop_id": "w1"},
            ),
            DocumentChange(
                document_id="r2",
                document_type="questionnaire_response",
                content="Workshop pacing felt slow today",
                language="en",
                metadata={"workshop_id": "w2"},
            ),
            DocumentChange(
                document_id="a1",
                document_type="analysis_result",
                content="Workshop pacing analysis summary",
                language="en",
            ),
            DocumentChange(
                document_id="p1",
                document_type="question",
                content="Tempo warsztatu workshop pacing było dobre",
                language="pl",
            ),
        ]
    )


@pytest.mark.asyncio
async def test_semantic_search_orders_by_relevance_with_facets(core):
    await seed(core)

    response = await core.semantic_search("workshop pacing")

    assert response.query_type == "semantic"
    assert response.detected_language == "en"
    assert response.total_results == 4
    assert response.results[0].document_id == "a1"
    assert [result.relevance for result in response.results] == sorted(
        (result.relevance for result in response.results), reverse=True
    )
    assert response.facets is not None
    assert response.facets.document_types == {"questionnaire_response": 2, "analysis_result": 1, "question": 1}
    assert response.facets.languages == {"en": 3, "pl": 1}
    assert response.facets.date_ranges == {"Last 7 days": 4}

    r1 = next(result for result in response.results if result.document_id == "r1")
    assert r1.highlights == ["Workshop pacing felt great overall"]


@pytest.mark.asyncio
async def test_pagination_reports_has_more(core):
    await seed(core)

    first = await core.semantic_search("workshop pacing", SemanticSearchOptions(pagination=SearchPagination(limit=3)))
    second = await core.semantic_search(
        "workshop pacing",
        SemanticSearchOptions(pagination=SearchPagination(limit=3, offset=3)),
    )

    assert len(first.results) == 3
    assert first.pagination.has_more is True
    assert len(second.results) == 1
    assert second.pagination.has_more is False
    assert {result.document_id for result in first.results + second.results} == {"r1", "r2", "a1", "p1"}


@pytest.mark.asyncio
async def test_sort_by_date_ascending(core):
    await seed(core)

    response = await core.semantic_search(
        "workshop pacing",
        SemanticSearchOptions(pagination=SearchPagination(sort_by="date", sort_order="asc")),
    )

    timestamps = [result.created_at for result in response.results]
    assert timestamps == sorted(timestamps)


@pytest.mark.asyncio
async def test_filtered_search_requires_a_filter(core):
    await seed(core)

    with pytest.raises(InvalidInput):
        await core.semantic_search("workshop pacing", SemanticSearchOptions(type="filtered"))

    response = await core.semantic_search(
        "workshop pacing",
        SemanticSearchOptions(type="filtered", filters=AdvancedSearchFilters(workshop_id="w2")),
    )
    assert [result.document_id for result in response.results] == ["r2"]

    by_type = await core.search.search_by_document_type("workshop pacing", "questionnaire_response")
    assert {result.document_id for result in by_type.results} == {"r1", "r2"}


@pytest.mark.asyncio
async def test_text_filters_apply_after_vector_search(core):
    await seed(core)

    async def ids_for(text_filters: TextFilters) -> set[str]:
        response = await core.semantic_search(
            "workshop pacing",
            SemanticSearchOptions(filters=AdvancedSearchFilters(text_filters=text_filters)),
        )
        return {result.document_id for result in response.results}

    assert await ids_for(TextFilters(include_terms=["slow"])) == {"r2"}
    assert await ids_for(TextFilters(exclude_terms=["slow"])) == {"r1", "a1", "p1"}
    assert await ids_for(TextFilters(exact_phrase="felt great")) == {"r1"}


@pytest.mark.asyncio
async def test_empty_query_is_rejected(core):
    with pytest.raises(InvalidInput):
        await core.semantic_search("  ")


@pytest.mark.asyncio
async def test_hybrid_search_blends_keyword_scores(core):
    await seed(core)

    semantic = await core.semantic_search("workshop pacing")
    assert semantic.results[0].document_id == "a1"

    hybrid = await core.search.hybrid_search("workshop pacing", "slow")
    assert hybrid.query_type == "hybrid"
    assert hybrid.results[0].document_id == "r2"

    with pytest.raises(InvalidInput):
        await core.search.hybrid_search("workshop pacing", semantic_weight=-1.0)


@pytest.mark.asyncio
async def test_multilingual_search_boosts_target_languages(core, settings):
    await seed(core)

    response = await core.search.multilingual_search("workshop pacing", target_languages=["pl"])

    polish = next(result for result in response.results if result.document_id == "p1")
    assert polish.relevance == pytest.approx(polish.similarity + settings.multilingual_language_boost)
    assert response.facets is not None
    assert response.facets.languages["pl"] == 1


@pytest.mark.asyncio
async def test_analytics_summary_and_suggestions(core):
    await seed(core)

    response = await core.semantic_search("workshop pacing", SemanticSearchOptions(user_id="u1"))
    await core.semantic_search("workshop pacing", SemanticSearchOptions(user_id="u1"))
    await core.semantic_search("Workshop venue", SemanticSearchOptions(user_id="u2"))
    await core.semantic_search("untracked workshop", SemanticSearchOptions(track_analytics=False))

    assert response.analytics is not None
    assert response.analytics.query_id is not None
    assert response.analytics.result_count == len(response.results)

    assert await core.get_search_suggestions("work") == ["workshop pacing", "Workshop venue"]
    assert await core.get_search_suggestions("WORK", user_id="u2") == ["Workshop venue"]
    assert await core.get_search_suggestions("untracked") == []
    assert await core.get_search_suggestions("%") == []
    assert await core.get_search_suggestions("work", max_suggestions=1) == ["workshop pacing"]


@pytest.mark.asyncio
async def test_search_history_and_trends(core):
    await seed(core)
    for query in ("workshop pacing", "workshop pacing", "venue noise"):
        await core.semantic_search(query, SemanticSearchOptions(user_id="u1"))

    history = await core.search.get_user_search_history("u1")
    assert [entry.query for entry in history] == ["venue noise", "workshop pacing", "workshop pacing"]
    assert history[1].query_type == "semantic_search"

    paged = await core.search.get_user_search_history("u1", limit=1, offset=1)
    assert [entry.query for entry in paged] == ["workshop pacing"]

    trends = await core.search.get_search_trends()
    assert trends[0].query == "workshop pacing"
    assert trends[0].frequency == 2
    assert trends[0].trend == "up"

    now = utcnow()
    with pytest.raises(InvalidInput):
        await core.search.get_search_trends(start=now, end=now - timedelta(days=1))

    popular = await core.search.get_popular_queries(limit=1)
    assert popular[0].query == "workshop pacing"
    assert popular[0].count == 2


def test_date_bucket_labels():
    now = utcnow()
    assert date_bucket(now - timedelta(days=2), now) == "Last 7 days"
    assert date_bucket(now - timedelta(days=20), now) == "Last 30 days"
    assert date_bucket(now - timedelta(days=60), now) == "Last 90 days"
    assert date_bucket(now - timedelta(days=400), now) == "Older"


def test_keyword_scores_handle_empty_vocabulary():
    scores = keyword_scores("pacing", ["workshop pacing notes", "venue catering"])
    assert scores[0] > 0.0
    assert scores[1] == 0.0

    assert keyword_scores("pacing", ["a", "b"]).tolist() == [0.0, 0.0]
    assert keyword_scores("pacing", []).size == 0
