"""URL canonicalization and the per-project search history ledger."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable
from urllib.parse import urlsplit

from relevx.models import ProcessedUrl, QueryPerformance, QueryStats, SearchHistory, utcnow

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Canonical form used as the dedup key: scheme://host/path.

    Lower-cases the host, drops a leading ``www.``, the query string, the
    fragment and a trailing slash. Unparseable input falls back to a
    lower-cased, trimmed copy; this function never raises.
    """
    raw = url.strip()
    try:
        parts = urlsplit(raw)
        host = parts.hostname
        if not parts.scheme or not host:
            return raw.lower()
        while host.startswith("www."):
            host = host[4:]
        if parts.port is not None:
            host = f"{host}:{parts.port}"
        path = parts.path or "/"
        if len(path) > 1:
            path = path.rstrip("/") or "/"
        return f"{parts.scheme}://{host}{path}"
    except ValueError:
        return raw.lower()


def extract_domain(url: str) -> str:
    """Host without ``www.``, or empty string if unparseable."""
    try:
        host = urlsplit(url.strip()).hostname or ""
    except ValueError:
        return ""
    while host.startswith("www."):
        host = host[4:]
    return host


def publication_name(url: str) -> str:
    """Human-readable outlet name from a URL, e.g. ``the-verge.com`` -> ``The Verge``."""
    host = extract_domain(url)
    if not host:
        return "Unknown Source"
    labels = host.split(".")
    name = labels[-2] if len(labels) >= 2 else labels[0]
    return " ".join(word.capitalize() for word in name.split("-") if word)


def seen_urls(history: SearchHistory) -> set[str]:
    """Normalized URLs already recorded for the project."""
    return set(history.processed_urls)


def merge_processed_urls(
    history: SearchHistory, entries: Iterable[ProcessedUrl]
) -> SearchHistory:
    """Fold this run's URLs into the ledger.

    Known URLs bump ``times_found``, take the latest score and keep
    ``was_included`` sticky; unknown URLs are appended.
    """
    for entry in entries:
        key = entry.normalized_url
        existing = history.processed_urls.get(key)
        if existing is None:
            history.processed_urls[key] = entry
            continue
        existing.times_found += 1
        if entry.last_relevancy_score is not None:
            existing.last_relevancy_score = entry.last_relevancy_score
        existing.was_included = existing.was_included or entry.was_included
    return history


def merge_query_performance(
    history: SearchHistory,
    deltas: dict[str, QueryStats],
    now: datetime | None = None,
) -> SearchHistory:
    """Accumulate per-query counts from one run.

    Success rate is derived from the accumulated totals, and the average
    relevancy score is weighted by the number of relevant URLs behind it.
    """
    now = now or utcnow()
    for query, delta in deltas.items():
        perf = history.query_performance.get(query)
        if perf is None:
            perf = QueryPerformance(query=query)
            history.query_performance[query] = perf

        previous_relevant = perf.relevant_urls_found
        perf.times_used += 1
        perf.urls_found += delta.urls_found
        perf.relevant_urls_found += delta.relevant_urls_found
        if perf.relevant_urls_found > 0:
            perf.average_relevancy_score = (
                perf.average_relevancy_score * previous_relevant
                + delta.relevancy_score_sum
            ) / perf.relevant_urls_found
        perf.last_used_at = now

    history.total_searches_executed += len(deltas)
    history.updated_at = now
    return history


def top_queries(history: SearchHistory, limit: int = 3) -> list[QueryPerformance]:
    """Best-performing past queries by success rate."""
    ranked = [p for p in history.query_performance.values() if p.urls_found > 0]
    ranked.sort(key=lambda p: p.success_rate, reverse=True)
    return ranked[:limit]
