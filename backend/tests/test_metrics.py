import logging
from datetime import datetime, timezone

import pytest

from conftest import FakeClock
from workshop_rag.schemas.documents import DocumentChange
from workshop_rag.schemas.rag import RAGQueryOptions
from workshop_rag.services.metrics import PerformanceMonitor, alert_rules_from_settings


def test_monitor_aggregates_embedding_and_search_events():
    monitor = PerformanceMonitor()
    monitor.record_embedding(100, success=True, items=4, cached=2, tokens=20, cost=0.002)
    monitor.record_embedding(300, success=True, items=4, cached=2, tokens=20, cost=0.002)
    monitor.record_embedding(900, success=False, items=3)
    monitor.record_search(20, result_count=3, average_similarity=0.8)
    monitor.record_search(40, result_count=1, average_similarity=0.6, method="ivf")

    embedding = monitor.embedding_metrics()
    assert embedding.total_operations == 3
    assert embedding.error_count == 1
    assert embedding.success_rate == pytest.approx(2 / 3)
    assert embedding.average_time_ms == pytest.approx(200)
    assert embedding.total_items == 8
    assert embedding.total_tokens == 40
    assert embedding.total_cost == pytest.approx(0.004)
    assert embedding.cache_hit_rate == pytest.approx(0.5)

    search = monitor.search_metrics()
    assert search.total_queries == 2
    assert search.average_time_ms == pytest.approx(30)
    assert search.average_results == pytest.approx(2)
    assert search.average_similarity == pytest.approx(0.7)
    assert search.by_method == {"exact": 1, "ivf": 1}

    monitor.reset()
    assert monitor.search_metrics().total_queries == 0


def test_history_keeps_only_newest_events():
    monitor = PerformanceMonitor(history_size=2)
    for duration in (10, 20, 30):
        monitor.record_search(duration, result_count=1, average_similarity=0.5)

    assert monitor.search_metrics().average_time_ms == pytest.approx(25)
    with pytest.raises(ValueError):
        PerformanceMonitor(history_size=0)


def test_report_window_accepts_naive_and_aware_bounds():
    clock = FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
    monitor = PerformanceMonitor(clock=clock)
    monitor.record_search(10, result_count=2, average_similarity=0.9)
    clock.advance(3600)
    monitor.record_search(50, result_count=4, average_similarity=0.7)

    later = monitor.report(start=datetime(2024, 5, 1, 12, 30))
    earlier = monitor.report(end=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc))

    assert later.search.total_queries == 1
    assert later.search.average_time_ms == pytest.approx(50)
    assert earlier.search.total_queries == 1
    assert earlier.search.average_time_ms == pytest.approx(10)

    with pytest.raises(ValueError):
        monitor.report(start=datetime(2024, 5, 2), end=datetime(2024, 5, 1))


def test_alerts_status_and_recommendations(settings, caplog):
    monitor = PerformanceMonitor(rules=alert_rules_from_settings(settings))
    empty = monitor.report()
    assert empty.alerts == []
    assert empty.status == "healthy"

    monitor.record_search(2500, result_count=0, average_similarity=0.0)
    monitor.record_embedding(40, success=False)
    with caplog.at_level(logging.WARNING, logger="workshop_rag.services.metrics"):
        report = monitor.report()

    by_metric = {alert.metric: alert for alert in report.alerts}
    assert set(by_metric) == {"embedding.success_rate", "search.average_time_ms", "search.average_results"}
    assert by_metric["embedding.success_rate"].severity == "critical"
    assert by_metric["search.average_time_ms"].value == pytest.approx(2500)
    assert report.status == "critical"
    assert "Optimise vector indexes or reduce the search result limit" in report.recommendations
    assert any("Performance alert" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_core_reports_cache_reuse_and_search_volume(core):
    text = "How was the workshop pacing"
    await core.store_document_embeddings(
        [DocumentChange(document_id="q1", document_type="questionnaire_response", content=text)]
    )
    await core.generate_embedding(text)
    result = await core.rag_query(text, RAGQueryOptions(min_similarity_threshold=0.5))

    report = await core.get_performance_report()

    assert [doc.document_id for doc in result.context_documents] == ["q1"]
    assert report.embedding.total_operations == 3
    assert report.embedding.error_count == 0
    assert report.embedding.cache_hit_rate == pytest.approx(2 / 3)
    assert report.search.total_queries == 1
    assert report.search.average_results == pytest.approx(1.0)
    assert report.search.by_method == {"exact": 1}
    assert report.indexes == []
    assert report.status == "healthy"
