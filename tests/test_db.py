"""Tests for database operations."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from relevx.db import (
    escalate_failure,
    get_admin_notifications,
    get_delivery_log,
    get_findings,
    get_project,
    get_projects_by_status,
    get_research_analytics,
    get_search_history,
    mark_projects_running,
    record_completed_research,
    release_delivery,
    save_research_output,
    transaction,
    update_project,
    update_search_history,
)
from relevx.errors import ProjectNotFoundError
from relevx.history import merge_processed_urls, merge_query_performance
from relevx.models import (
    AdminNotification,
    DeliveryLog,
    DeliveryStats,
    ProcessedUrl,
    QueryStats,
)
from tests.conftest import make_finding


def _log(project, status="pending"):
    return DeliveryLog(
        user_id=project.user_id,
        project_id=project.id,
        report_markdown="# Report",
        report_title=project.title,
        stats=DeliveryStats(included_results=1, freshness_used="pd"),
        status=status,
        result_urls=["https://a.com/1"],
    )


def test_insert_and_fetch_project(db_conn, sample_project):
    project = get_project(db_conn, "user-1", sample_project.id)
    assert project.title == "AI Chips Weekly"
    assert project.settings.min_results == 3
    assert project.next_run_at == sample_project.next_run_at
    assert project.next_run_at.tzinfo is not None


def test_project_lookup_is_scoped_by_user(db_conn, sample_project):
    with pytest.raises(ProjectNotFoundError):
        get_project(db_conn, "someone-else", sample_project.id)


def test_update_project(db_conn, sample_project, now):
    update_project(db_conn, "user-1", sample_project.id, status="error", last_error="boom", last_run_at=now)
    project = get_project(db_conn, "user-1", sample_project.id)
    assert project.status == "error"
    assert project.last_error == "boom"
    assert project.last_run_at == now
    assert get_projects_by_status(db_conn, "active") == []


def test_update_project_rejects_unknown_fields(db_conn, sample_project):
    with pytest.raises(ValueError, match="title"):
        update_project(db_conn, "user-1", sample_project.id, title="renamed")


def test_mark_projects_running_claims_once(db_conn, sample_project, now):
    assert len(mark_projects_running(db_conn, [sample_project], now)) == 1
    stale_copy = get_project(db_conn, "user-1", sample_project.id)
    stale_copy.status = "active"
    assert mark_projects_running(db_conn, [stale_copy], now) == []
    project = get_project(db_conn, "user-1", sample_project.id)
    assert project.status == "running"
    assert project.research_started_at == now


def test_save_research_output_is_atomic(db_conn, sample_project):
    finding = make_finding("https://a.com/1")
    finding.project_id = sample_project.id

    def _merge(history):
        raise RuntimeError("merge failed")

    with pytest.raises(RuntimeError):
        save_research_output(db_conn, _log(sample_project), [finding], _merge)

    assert get_findings(db_conn, "user-1", sample_project.id) == []
    assert db_conn.execute("SELECT COUNT(*) FROM delivery_logs").fetchone()[0] == 0


def test_save_research_output(db_conn, sample_project):
    finding = make_finding("https://a.com/1", key_points=["one"])
    finding.project_id = sample_project.id

    def _merge(history):
        merge_processed_urls(
            history, [ProcessedUrl(url=finding.url, normalized_url=finding.normalized_url, was_included=True)]
        )
        merge_query_performance(history, {"ai chips": QueryStats(4, 1, 80.0)})

    log_id = save_research_output(db_conn, _log(sample_project), [finding], _merge)

    findings = get_findings(db_conn, "user-1", sample_project.id, delivery_log_id=log_id)
    assert [f.url for f in findings] == ["https://a.com/1"]
    assert findings[0].key_points == ["one"]

    log = get_delivery_log(db_conn, "user-1", sample_project.id, log_id)
    assert log.status == "pending"
    assert log.stats.freshness_used == "pd"
    assert log.result_urls == ["https://a.com/1"]

    history = get_search_history(db_conn, "user-1", sample_project.id)
    assert history.processed_urls[finding.normalized_url].was_included is True
    assert history.query_performance["ai chips"].average_relevancy_score == 80.0
    assert history.total_searches_executed == 1


def test_search_history_defaults_to_empty(db_conn):
    history = get_search_history(db_conn, "user-1", "missing")
    assert history.processed_urls == {}
    assert history.total_searches_executed == 0


def test_update_search_history_round_trip(db_conn, sample_project, now):
    def _merge(history):
        merge_query_performance(history, {"q": QueryStats(10, 3, 210.0)}, now)

    update_search_history(db_conn, "user-1", sample_project.id, _merge)
    update_search_history(db_conn, "user-1", sample_project.id, _merge)

    perf = get_search_history(db_conn, "user-1", sample_project.id).query_performance["q"]
    assert perf.times_used == 2
    assert perf.urls_found == 20
    assert perf.last_used_at == now


def test_release_delivery(db_conn, sample_project, now):
    log_id = save_research_output(db_conn, _log(sample_project), [], lambda h: None)
    update_project(db_conn, "user-1", sample_project.id, prepared_delivery_log_id=log_id)

    next_run = now + timedelta(days=1)
    release_delivery(db_conn, sample_project, log_id, now, next_run)

    log = get_delivery_log(db_conn, "user-1", sample_project.id, log_id)
    assert log.status == "success"
    assert log.delivered_at == now
    project = get_project(db_conn, "user-1", sample_project.id)
    assert project.prepared_delivery_log_id is None
    assert project.last_run_at == now
    assert project.next_run_at == next_run


def test_escalate_failure(db_conn, sample_project, now):
    notification = AdminNotification(
        project_id=sample_project.id,
        user_id="user-1",
        project_title=sample_project.title,
        error_message="RuntimeError: boom",
        retry_count=2,
        occurred_at=now,
    )
    next_run = now + timedelta(days=1)
    escalate_failure(db_conn, notification, next_run)

    [stored] = get_admin_notifications(db_conn, status="pending")
    assert stored.type == "research_failure"
    assert stored.severity == "high"
    assert stored.retry_count == 2
    project = get_project(db_conn, "user-1", sample_project.id)
    assert project.status == "error"
    assert project.last_error == "RuntimeError: boom"
    assert project.next_run_at == next_run


def test_record_completed_research(db_conn, now):
    with transaction(db_conn):
        record_completed_research(db_conn, "user-1", "p1", now)
        record_completed_research(db_conn, "user-1", "p1", now)
        record_completed_research(db_conn, "user-2", "p2", now)

    daily = get_research_analytics(db_conn, "user:user-1", "2026-01-08")
    assert daily == {"completed_research": 2, "project_ids": ["p1"]}
    monthly = get_research_analytics(db_conn, "global", "2026-01")
    assert monthly["completed_research"] == 3
    assert get_research_analytics(db_conn, "global", "2025-12") is None


def test_save_research_output_counts_completed_research(db_conn, sample_project, now):
    log = _log(sample_project)
    log.research_completed_at = now
    save_research_output(db_conn, log, [], lambda h: None)

    daily = get_research_analytics(db_conn, "user:user-1", "2026-01-08")
    assert daily == {"completed_research": 1, "project_ids": [sample_project.id]}


def test_analytics_failure_rolls_back_run_output(db_conn, sample_project):
    finding = make_finding("https://a.com/1")
    finding.project_id = sample_project.id

    with patch("relevx.db.record_completed_research", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            save_research_output(db_conn, _log(sample_project), [finding], lambda h: None)

    assert get_findings(db_conn, "user-1", sample_project.id) == []
    assert db_conn.execute("SELECT COUNT(*) FROM delivery_logs").fetchone()[0] == 0
    assert db_conn.execute("SELECT COUNT(*) FROM search_history").fetchone()[0] == 0
