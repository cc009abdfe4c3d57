"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from relevx.config import load_config
from relevx.db import get_connection, init_db, insert_project
from relevx.history import normalize_url
from relevx.llm.cost import UsageTracker
from relevx.llm.research import Capability
from relevx.llm.schemas import FilterDecision, GeneratedQuery, RelevancyVerdict
from relevx.models import (
    CompiledReport,
    ExtractedContent,
    Finding,
    Project,
    ProjectSettings,
    SearchResultItem,
)


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config for testing (no real API keys, no backoff delays)."""
    config_text = """
llm:
  default_provider: mock
  providers:
    mock:
      type: "openai_compatible"
      api_key: "test-key"
      base_url: "http://localhost:9999"
      default_model: "test-model"
  tasks:
    query_generation: { provider: "mock" }
    search_filtering: { provider: "mock" }
    relevancy_analysis: { provider: "mock" }
    report_compilation: { provider: "mock" }
    clustered_report_compilation: { provider: "mock" }
    report_summary: { provider: "mock" }
  task_retry:
    attempts: 3
    base_delay: 0
    max_delay: 0

search:
  provider: "brave"
  api_key: "search-key"
  min_interval_seconds: 0
  max_retries: 2
  base_delay: 0
  max_delay: 0
  rate_limit_base_delay: 0
  rate_limit_max_delay: 0
  rate_limit_cooldown: 0

extraction:
  max_retries: 1
  retry_delay: 0

research:
  max_iterations: 3
  queries_per_iteration: 2

clustering:
  enabled: true
  similarity_threshold: 0.85

database:
  path: "DB_PATH_PLACEHOLDER"
"""
    db_path = str(tmp_path / "test.db")
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(config_text.replace("DB_PATH_PLACEHOLDER", db_path))
    return load_config(str(cfg_path))


@pytest.fixture
def db_conn(sample_config):
    """Initialized test database connection."""
    db_path = sample_config["database"]["path"]
    init_db(db_path)
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def now():
    return datetime(2026, 1, 8, 8, 50, tzinfo=timezone.utc)


@pytest.fixture
def sample_project(db_conn, now):
    """Daily project due at 09:00 UTC, inserted into the test database."""
    project = Project(
        user_id="user-1",
        title="AI Chips Weekly",
        description="AI chip announcements",
        frequency="daily",
        delivery_time="09:00",
        timezone="UTC",
        settings=ProjectSettings(relevancy_threshold=60, min_results=3, max_results=10),
        next_run_at=now + timedelta(minutes=10),
    )
    insert_project(db_conn, project)
    return project


def make_finding(url: str, score: float = 80, title: str = "", key_points=None) -> Finding:
    return Finding(
        user_id="user-1",
        project_id="project-1",
        url=url,
        normalized_url=normalize_url(url),
        source_query="ai chips",
        snippet=f"Snippet for {url}",
        relevancy_score=score,
        key_points=list(key_points or []),
        title=title or f"Title for {url}",
    )


@pytest.fixture
def sample_findings():
    return [
        make_finding(
            "https://www.theverge.com/nvidia-b300", 92, "Nvidia unveils B300",
            ["Nvidia announced the B300 accelerator", "Shipping in Q3"],
        ),
        make_finding(
            "https://techcrunch.com/nvidia-b300-launch", 84, "Nvidia's B300 launches",
            ["Nvidia announced the B300 accelerator chip", "Priced above the B200"],
        ),
        make_finding(
            "https://example.com/amd-mi400", 70, "AMD teases MI400",
            ["AMD previewed the MI400"],
        ),
    ]


class FakeLLM:
    """In-memory research LLM; scores every page by ``scores`` or ``default_score``."""

    provider_name = "mock"
    model = "test-model"

    def __init__(
        self,
        queries=None,
        scores=None,
        default_score=80,
        capabilities=(Capability.FILTER_SEARCH_RESULTS, Capability.COMPILE_CLUSTERED_REPORT),
        fail_on=None,
    ):
        self.queries = queries or (lambda iteration: [f"ai chips {iteration}a", f"ai chips {iteration}b"])
        self.scores = scores or {}
        self.default_score = default_score
        self.capabilities = frozenset(capabilities)
        self.fail_on = fail_on
        self.usage = UsageTracker()
        self.calls: list[str] = []
        self.previous_queries_seen: list = []

    def supports(self, capability) -> bool:
        return Capability(capability) in self.capabilities

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_on == name:
            raise RuntimeError(f"{name} exploded")

    async def generate_search_queries(self, project, iteration=1, previous_queries=None, count=5):
        self._record("generate_search_queries")
        self.previous_queries_seen.append(previous_queries)
        self.usage.track(100, 50, self.model)
        return [GeneratedQuery(query=q) for q in self.queries(iteration)]

    async def filter_search_results(self, project, results):
        self._record("filter_search_results")
        return [FilterDecision(url=r.url, keep=True) for r in results]

    async def analyze_relevancy(self, project, contents):
        self._record("analyze_relevancy")
        verdicts = []
        for content in contents:
            score = self.scores.get(content.url, self.default_score)
            verdicts.append(
                RelevancyVerdict(
                    url=content.url,
                    score=score,
                    reasoning="matches",
                    key_points=[f"Point about {content.title}"],
                    is_relevant=score >= project.settings.relevancy_threshold,
                )
            )
        return verdicts

    async def compile_report(self, project, findings):
        self._record("compile_report")
        return CompiledReport(
            markdown=f"# {project.title}\n\n" + "\n".join(f"- {f.title}" for f in findings),
            title=project.title,
            summary="compiled summary",
            result_count=len(findings),
        )

    async def compile_clustered_report(self, project, clusters):
        self._record("compile_clustered_report")
        return CompiledReport(
            markdown=f"# {project.title}\n\n" + "\n".join(f"## {c.topic}" for c in clusters),
            title=project.title,
            summary="clustered summary",
            result_count=sum(len(c.members) for c in clusters),
        )

    async def generate_report_summary(self, project, markdown):
        self._record("generate_report_summary")
        return "executive summary"


class FakeSearch:
    """Search provider returning ``per_query`` fresh results for every query."""

    name = "Fake Search"

    def __init__(self, per_query=2, results=None):
        self.per_query = per_query
        self.results = results
        self.calls: list[tuple[list[str], object]] = []

    async def search_multiple(self, queries, filters=None):
        self.calls.append((list(queries), filters))
        if self.results is not None:
            return {q: list(self.results.get(q, [])) for q in queries}
        return {
            q: [
                SearchResultItem(
                    title=f"{q} result {i}",
                    url=f"https://news.example.com/{q.replace(' ', '-')}/{i}",
                    description=f"About {q}",
                )
                for i in range(self.per_query)
            ]
            for q in queries
        }


class FakeExtractor:
    """Extractor that succeeds for every URL except those in ``fail``."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls: list[list[str]] = []

    async def extract_multiple(self, urls):
        self.calls.append(list(urls))
        results = []
        for url in urls:
            if url in self.fail:
                results.append(
                    ExtractedContent(
                        url=url, normalized_url=normalize_url(url),
                        fetch_status="blocked", fetch_error="HTTP 403",
                    )
                )
                continue
            results.append(
                ExtractedContent(
                    url=url,
                    normalized_url=normalize_url(url),
                    title=f"Page {url.rsplit('/', 2)[-2]}",
                    snippet=f"A new AI chip was announced at {url}.",
                    word_count=9,
                )
            )
        return results


class FakeClusterer:
    """Each finding is its own topic."""

    def cluster(self, findings):
        from relevx.process.cluster import build_cluster

        return [build_cluster([f]) for f in findings]


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_search():
    return FakeSearch()


@pytest.fixture
def fake_extractor():
    return FakeExtractor()
