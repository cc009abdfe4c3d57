"""Tests for the research orchestrator."""

from __future__ import annotations

import numpy as np
import pytest

from relevx.db import (
    get_delivery_log,
    get_delivery_logs,
    get_findings,
    get_project,
    get_research_analytics,
    get_search_history,
    insert_project,
)
from relevx.llm.research import Capability
from relevx.models import (
    ExtractedContent,
    Project,
    ProjectSettings,
    SearchParameters,
    SearchResultItem,
)
from relevx.pipeline import (
    ResearchOrchestrator,
    initial_freshness,
    passes_keyword_filter,
    widen_freshness,
)
from relevx.process.cluster import TopicClusterer
from relevx.synthesize.report import NO_RESULTS_MESSAGE
from tests.conftest import FakeClusterer, FakeExtractor, FakeLLM, FakeSearch


def _orchestrator(config, conn, llm=None, search=None, extractor=None, clusterer=None):
    return ResearchOrchestrator(
        config,
        conn,
        llm=llm or FakeLLM(),
        search=search or FakeSearch(),
        extractor=extractor or FakeExtractor(),
        clusterer=clusterer or FakeClusterer(),
    )


def _project(conn, **kwargs):
    settings = kwargs.pop("settings", ProjectSettings(min_results=3, max_results=10))
    project = Project(
        user_id="user-1",
        title="AI Chips",
        description="AI chip announcements",
        frequency="daily",
        settings=settings,
        **kwargs,
    )
    insert_project(conn, project)
    return project


def _items(*urls, description="Chip news"):
    return [SearchResultItem(title=f"Title {u}", url=u, description=description) for u in urls]


# --- Helpers ---


def test_initial_freshness_follows_frequency():
    assert initial_freshness("daily") == "pd"
    assert initial_freshness("weekly") == "pw"
    assert initial_freshness("monthly") == "pm"


def test_widen_freshness_order():
    assert widen_freshness("pd") == "pw"
    assert widen_freshness("pw") == "pm"
    assert widen_freshness("pm") == "py"
    assert widen_freshness("py") is None


def test_passes_keyword_filter():
    project = Project(
        user_id="u", title="t", description="d",
        search_parameters=SearchParameters(
            required_keywords=["nvidia", "AMD"], excluded_keywords=["rumor"]
        ),
    )

    def content(text):
        return ExtractedContent(url="https://a.com", normalized_url="https://a.com/", snippet=text)

    assert passes_keyword_filter(content("amd ships a chip"), project)
    assert not passes_keyword_filter(content("intel ships a chip"), project)
    assert not passes_keyword_filter(content("nvidia rumor mill"), project)


# --- Runs ---


@pytest.mark.asyncio
async def test_end_to_end_success(sample_config, db_conn, sample_project):
    """AI chip announcements, daily, min 3, threshold 60."""
    llm = FakeLLM()
    result = await _orchestrator(sample_config, db_conn, llm=llm).run(
        "user-1", sample_project.id
    )

    assert result.success is True
    assert len(result.relevant_results) >= 3
    assert result.report.markdown
    assert result.report.summary == "executive summary"
    assert result.iterations_used == 1
    assert result.queries_executed == ["ai chips 1a", "ai chips 1b"]
    assert result.urls_fetched == 4
    assert result.urls_successful == 4
    assert result.duration_ms >= 0

    log = get_delivery_log(db_conn, "user-1", sample_project.id, result.delivery_log_id)
    assert log.status == "pending"
    assert log.delivered_at is None
    assert log.stats.included_results == 4
    assert log.stats.freshness_used == "pd"
    assert log.stats.freshness_expanded is False
    assert log.stats.llm_provider == "mock"
    assert log.stats.estimated_total_tokens == 150
    assert log.stats.success_rate == 100.0

    findings = get_findings(db_conn, "user-1", sample_project.id, result.delivery_log_id)
    assert len(findings) == 4
    assert all(f.search_engine == "Fake Search" for f in findings)

    history = get_search_history(db_conn, "user-1", sample_project.id)
    assert len(history.processed_urls) == 4
    assert all(p.was_included for p in history.processed_urls.values())
    assert history.query_performance["ai chips 1a"].relevant_urls_found == 2

    daily = get_research_analytics(db_conn, "user:user-1", result.completed_at.strftime("%Y-%m-%d"))
    assert daily["completed_research"] == 1


@pytest.mark.asyncio
async def test_delivery_status_success_marks_delivered(sample_config, db_conn, sample_project):
    result = await _orchestrator(sample_config, db_conn).run(
        "user-1", sample_project.id, delivery_status="success"
    )
    log = get_delivery_log(db_conn, "user-1", sample_project.id, result.delivery_log_id)
    assert log.status == "success"
    assert log.delivered_at == result.completed_at


@pytest.mark.asyncio
async def test_stops_once_min_results_reached(sample_config, db_conn):
    """Five findings after iteration 2 of 3 end the loop before iteration 3."""
    project = _project(db_conn, settings=ProjectSettings(min_results=5))
    search = FakeSearch(
        results={
            "ai chips 1a": _items("https://a.com/1"),
            "ai chips 1b": _items("https://a.com/2"),
            "ai chips 2a": _items("https://a.com/3", "https://a.com/4"),
            "ai chips 2b": _items("https://a.com/5"),
            "ai chips 3a": _items("https://a.com/6"),
        }
    )
    llm = FakeLLM()
    result = await _orchestrator(sample_config, db_conn, llm=llm, search=search).run(
        "user-1", project.id
    )

    assert result.iterations_used == 2
    assert len(result.relevant_results) == 5
    assert llm.calls.count("generate_search_queries") == 2
    assert len(search.calls) == 2


@pytest.mark.asyncio
async def test_freshness_widens_at_most_once(sample_config, db_conn, sample_project):
    search = FakeSearch(per_query=0)
    result = await _orchestrator(sample_config, db_conn, search=search).run(
        "user-1", sample_project.id
    )

    assert [filters.freshness for _, filters in search.calls] == ["pd", "pw", "pw"]
    assert result.iterations_used == 3
    log = get_delivery_log(db_conn, "user-1", sample_project.id, result.delivery_log_id)
    assert log.stats.freshness_expanded is True
    assert log.stats.freshness_used == "pw"


@pytest.mark.asyncio
async def test_zero_results_produce_empty_report(sample_config, db_conn, sample_project):
    llm = FakeLLM(default_score=10)
    result = await _orchestrator(sample_config, db_conn, llm=llm).run(
        "user-1", sample_project.id
    )

    assert result.success is True
    assert result.relevant_results == []
    assert NO_RESULTS_MESSAGE in result.report.markdown
    assert "compile_report" not in llm.calls
    assert get_findings(db_conn, "user-1", sample_project.id) == []

    history = get_search_history(db_conn, "user-1", sample_project.id)
    assert len(history.processed_urls) == 12
    assert all(p.last_relevancy_score == 10 for p in history.processed_urls.values())
    assert not any(p.was_included for p in history.processed_urls.values())


@pytest.mark.asyncio
async def test_results_capped_and_sorted(sample_config, db_conn):
    project = _project(db_conn, settings=ProjectSettings(min_results=1, max_results=2))
    search = FakeSearch(
        results={"ai chips 1a": _items("https://a.com/1", "https://a.com/2", "https://a.com/3")}
    )
    llm = FakeLLM(scores={"https://a.com/1": 70, "https://a.com/2": 95, "https://a.com/3": 85})
    result = await _orchestrator(sample_config, db_conn, llm=llm, search=search).run(
        "user-1", project.id
    )

    assert [f.url for f in result.relevant_results] == ["https://a.com/2", "https://a.com/3"]
    history = get_search_history(db_conn, "user-1", project.id)
    included = {p.url for p in history.processed_urls.values() if p.was_included}
    assert included == {"https://a.com/2", "https://a.com/3"}
    assert history.processed_urls["https://a.com/1"].last_relevancy_score == 70


@pytest.mark.asyncio
async def test_previously_seen_urls_are_skipped(sample_config, db_conn, sample_project):
    extractor = FakeExtractor()
    orchestrator = _orchestrator(sample_config, db_conn, extractor=extractor)
    first = await orchestrator.run("user-1", sample_project.id)
    second = await orchestrator.run("user-1", sample_project.id)

    assert len(first.relevant_results) == 4
    # Iteration 1 repeats known URLs; iteration 2 brings new queries
    assert second.iterations_used == 2
    assert len(second.relevant_results) == 4
    fetched = [url for batch in extractor.calls for url in batch]
    assert len(fetched) == len(set(fetched))


@pytest.mark.asyncio
async def test_later_iterations_get_top_queries(sample_config, db_conn, sample_project):
    orchestrator = _orchestrator(sample_config, db_conn)
    await orchestrator.run("user-1", sample_project.id)

    llm = FakeLLM(default_score=10)
    await _orchestrator(sample_config, db_conn, llm=llm).run("user-1", sample_project.id)

    assert llm.previous_queries_seen[0] is None
    assert {q.query for q in llm.previous_queries_seen[1]} == {"ai chips 1a", "ai chips 1b"}


@pytest.mark.asyncio
async def test_repeated_query_is_searched_and_counted_once(sample_config, db_conn, sample_project):
    llm = FakeLLM(queries=lambda iteration: ["ai chips", "ai chips", "ai chips b"])
    search = FakeSearch()
    result = await _orchestrator(sample_config, db_conn, llm=llm, search=search).run(
        "user-1", sample_project.id
    )

    assert search.calls[0][0] == ["ai chips", "ai chips b"]
    assert result.queries_executed == ["ai chips", "ai chips b"]
    perf = get_search_history(db_conn, "user-1", sample_project.id).query_performance["ai chips"]
    assert perf.urls_found == 2
    assert perf.relevant_urls_found == 2
    assert perf.success_rate == 100.0


@pytest.mark.asyncio
async def test_excluded_keywords_drop_results_before_fetch(sample_config, db_conn):
    project = _project(
        db_conn, search_parameters=SearchParameters(excluded_keywords=["Rumor"]),
    )
    search = FakeSearch(
        results={
            "ai chips 1a": _items("https://a.com/1")
            + _items("https://a.com/2", description="rumor: new chip"),
        }
    )
    extractor = FakeExtractor()
    await _orchestrator(sample_config, db_conn, search=search, extractor=extractor).run(
        "user-1", project.id
    )
    assert extractor.calls[0] == ["https://a.com/1"]


@pytest.mark.asyncio
async def test_failed_extractions_are_counted(sample_config, db_conn, sample_project):
    failing = "https://news.example.com/ai-chips-1a/0"
    result = await _orchestrator(
        sample_config, db_conn, extractor=FakeExtractor(fail={failing})
    ).run("user-1", sample_project.id)

    assert result.urls_fetched == 4
    assert result.urls_successful == 3
    assert failing not in {f.url for f in result.relevant_results}


@pytest.mark.asyncio
async def test_prefilter_skipped_without_capability(sample_config, db_conn, sample_project):
    llm = FakeLLM(capabilities=())
    result = await _orchestrator(sample_config, db_conn, llm=llm).run("user-1", sample_project.id)
    assert result.success is True
    assert "filter_search_results" not in llm.calls


@pytest.mark.asyncio
async def test_prefilter_failure_is_not_fatal(sample_config, db_conn, sample_project):
    llm = FakeLLM(fail_on="filter_search_results")
    result = await _orchestrator(sample_config, db_conn, llm=llm).run("user-1", sample_project.id)
    assert result.success is True
    assert len(result.relevant_results) == 4


@pytest.mark.asyncio
async def test_summary_failure_keeps_compiled_summary(sample_config, db_conn, sample_project):
    llm = FakeLLM(fail_on="generate_report_summary")
    result = await _orchestrator(sample_config, db_conn, llm=llm).run("user-1", sample_project.id)
    assert result.success is True
    assert result.report.summary == "compiled summary"


@pytest.mark.asyncio
async def test_multi_source_topics_use_clustered_report(sample_config, db_conn, sample_project):
    clusterer = TopicClusterer(sample_config, embed=lambda texts: np.ones((len(texts), 4)))
    llm = FakeLLM()
    await _orchestrator(sample_config, db_conn, llm=llm, clusterer=clusterer).run(
        "user-1", sample_project.id
    )
    assert "compile_clustered_report" in llm.calls
    assert "compile_report" not in llm.calls


@pytest.mark.asyncio
async def test_clustered_report_requires_capability(sample_config, db_conn, sample_project):
    clusterer = TopicClusterer(sample_config, embed=lambda texts: np.ones((len(texts), 4)))
    llm = FakeLLM(capabilities=(Capability.FILTER_SEARCH_RESULTS,))
    await _orchestrator(sample_config, db_conn, llm=llm, clusterer=clusterer).run(
        "user-1", sample_project.id
    )
    assert "compile_report" in llm.calls
    assert "compile_clustered_report" not in llm.calls


@pytest.mark.asyncio
async def test_failure_marks_project_error_and_persists_nothing(
    sample_config, db_conn, sample_project
):
    llm = FakeLLM(fail_on="analyze_relevancy")
    result = await _orchestrator(sample_config, db_conn, llm=llm).run("user-1", sample_project.id)

    assert result.success is False
    assert "analyze_relevancy exploded" in result.error
    assert result.delivery_log_id is None
    assert result.iterations_used == 1

    project = get_project(db_conn, "user-1", sample_project.id)
    assert project.status == "error"
    assert "analyze_relevancy exploded" in project.last_error
    assert get_findings(db_conn, "user-1", sample_project.id) == []
    assert get_delivery_logs(db_conn, "user-1", sample_project.id) == []
    assert get_search_history(db_conn, "user-1", sample_project.id).processed_urls == {}


@pytest.mark.asyncio
async def test_unknown_project_fails_cleanly(sample_config, db_conn):
    result = await _orchestrator(sample_config, db_conn).run("user-1", "missing")
    assert result.success is False
    assert "ProjectNotFoundError" in result.error
