"""Core data models for the research engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Brave-style freshness codes, in widening order
FRESHNESS_ORDER = ["pd", "pw", "pm", "py"]

FRESHNESS_LABELS = {
    "pd": "past 24 hours",
    "pw": "past week",
    "pm": "past month",
    "py": "past year",
}


@dataclass
class SearchParameters:
    """Per-project search shaping."""

    priority_domains: list[str] = field(default_factory=list)
    excluded_domains: list[str] = field(default_factory=list)
    required_keywords: list[str] = field(default_factory=list)
    excluded_keywords: list[str] = field(default_factory=list)
    language: str | None = None
    region: str | None = None


@dataclass
class ProjectSettings:
    relevancy_threshold: int = 60  # 0-100
    min_results: int = 5
    max_results: int = 20


@dataclass
class Project:
    """A user's standing research request."""

    user_id: str
    title: str
    description: str
    frequency: str = "daily"  # daily, weekly, monthly
    delivery_time: str = "09:00"  # local HH:MM
    timezone: str = "UTC"
    day_of_week: int | None = None  # 0=Monday, weekly only
    day_of_month: int | None = None  # 1-31, monthly only
    search_parameters: SearchParameters = field(default_factory=SearchParameters)
    settings: ProjectSettings = field(default_factory=ProjectSettings)
    status: str = "active"  # active, running, paused, error
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    last_error: str | None = None
    prepared_delivery_log_id: str | None = None
    research_started_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: str | None = None


@dataclass
class ProcessedUrl:
    """Ledger entry for a URL the project has already seen."""

    url: str
    normalized_url: str
    first_seen_at: datetime = field(default_factory=utcnow)
    times_found: int = 1
    last_relevancy_score: float | None = None
    was_included: bool = False


@dataclass
class QueryPerformance:
    """Ledger entry for a search query's historical yield."""

    query: str
    times_used: int = 0
    urls_found: int = 0
    relevant_urls_found: int = 0
    average_relevancy_score: float = 0.0
    last_used_at: datetime = field(default_factory=utcnow)

    @property
    def success_rate(self) -> float:
        """Percentage of found URLs that became relevant findings."""
        if self.urls_found == 0:
            return 0.0
        return self.relevant_urls_found / self.urls_found * 100


@dataclass
class QueryStats:
    """Per-run delta for one query, merged into QueryPerformance."""

    urls_found: int = 0
    relevant_urls_found: int = 0
    relevancy_score_sum: float = 0.0


@dataclass
class SearchHistory:
    """One ledger document per project."""

    user_id: str
    project_id: str
    processed_urls: dict[str, ProcessedUrl] = field(default_factory=dict)
    query_performance: dict[str, QueryPerformance] = field(default_factory=dict)
    total_searches_executed: int = 0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SearchFilters:
    """Filters rendered into the search provider's query syntax."""

    freshness: str | None = None  # pd, pw, pm, py
    date_from: str | None = None  # YYYY-MM-DD, used when freshness is unset
    date_to: str | None = None
    include_domains: list[str] = field(default_factory=list)
    exclude_domains: list[str] = field(default_factory=list)
    country: str | None = None
    language: str | None = None
    count: int = 20
    offset: int = 0


@dataclass
class SearchResultItem:
    """A single hit returned by a search provider."""

    title: str
    url: str
    description: str = ""
    published_date: str | None = None
    thumbnail: str | None = None
    source: str = ""


@dataclass
class ExtractedContent:
    """Result of fetching and parsing one page."""

    url: str
    normalized_url: str
    title: str = ""
    snippet: str = ""
    full_content: str | None = None
    headings: list[str] = field(default_factory=list)
    images: list[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    word_count: int = 0
    fetch_status: str = "success"  # success, failed, timeout, blocked
    fetch_error: str | None = None
    fetched_at: datetime = field(default_factory=utcnow)


@dataclass
class Finding:
    """One extracted and scored piece of content."""

    user_id: str
    project_id: str
    url: str
    normalized_url: str
    source_query: str
    snippet: str
    relevancy_score: float
    relevancy_reason: str = ""
    key_points: list[str] = field(default_factory=list)
    title: str = ""
    author: str | None = None
    published_date: str | None = None
    image_url: str | None = None
    full_content: str | None = None
    search_engine: str = ""
    word_count: int = 0
    fetched_at: datetime = field(default_factory=utcnow)
    analyzed_at: datetime = field(default_factory=utcnow)
    delivery_log_id: str | None = None
    id: str | None = None


@dataclass
class ArticleSource:
    name: str
    url: str
    published_date: str | None = None


@dataclass
class TopicCluster:
    """Findings judged to cover the same story."""

    id: str
    topic: str
    primary_article: Finding
    related_articles: list[Finding] = field(default_factory=list)
    all_sources: list[ArticleSource] = field(default_factory=list)
    combined_key_points: list[str] = field(default_factory=list)
    average_score: float = 0.0

    @property
    def members(self) -> list[Finding]:
        return [self.primary_article, *self.related_articles]


@dataclass
class CompiledReport:
    markdown: str
    title: str
    summary: str = ""
    result_count: int = 0
    average_score: float = 0.0


@dataclass
class DeliveryStats:
    total_results: int = 0
    included_results: int = 0
    average_relevancy_score: float = 0.0
    search_queries_used: int = 0
    iterations_required: int = 0
    urls_fetched: int = 0
    urls_successful: int = 0
    success_rate: float = 0.0
    research_duration_ms: int = 0
    estimated_total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    freshness_used: str | None = None
    freshness_expanded: bool = False
    llm_provider: str = ""
    llm_model: str = ""


@dataclass
class DeliveryLog:
    """One completed or attempted run's report."""

    user_id: str
    project_id: str
    report_markdown: str
    report_title: str
    report_summary: str = ""
    stats: DeliveryStats = field(default_factory=DeliveryStats)
    status: str = "pending"  # pending, success, failed, partial
    retry_count: int = 0
    error: str | None = None
    result_urls: list[str] = field(default_factory=list)
    research_started_at: datetime | None = None
    research_completed_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: str | None = None


@dataclass
class AdminNotification:
    """Operator alert raised when a project fails twice in a row."""

    project_id: str
    user_id: str
    project_title: str
    error_message: str
    retry_count: int
    type: str = "research_failure"
    severity: str = "high"
    status: str = "pending"
    occurred_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass
class ResearchResult:
    """Outcome of one orchestrator run, consumed by the scheduler."""

    success: bool
    started_at: datetime
    completed_at: datetime
    relevant_results: list[Finding] = field(default_factory=list)
    iterations_used: int = 0
    queries_generated: list[str] = field(default_factory=list)
    queries_executed: list[str] = field(default_factory=list)
    urls_fetched: int = 0
    urls_successful: int = 0
    report: CompiledReport | None = None
    delivery_log_id: str | None = None
    error: str | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)
