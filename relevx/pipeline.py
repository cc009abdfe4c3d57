"""Research pipeline: one project's search, extract, score, cluster and compile run."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field

from relevx import db
from relevx.config import get_clustering_config, get_research_config, get_search_config
from relevx.extract import ContentExtractor
from relevx.history import (
    merge_processed_urls,
    merge_query_performance,
    normalize_url,
    seen_urls,
    top_queries,
)
from relevx.llm.research import Capability
from relevx.models import (
    FRESHNESS_LABELS,
    FRESHNESS_ORDER,
    CompiledReport,
    DeliveryLog,
    DeliveryStats,
    ExtractedContent,
    Finding,
    ProcessedUrl,
    Project,
    QueryStats,
    ResearchResult,
    SearchFilters,
    SearchHistory,
    SearchResultItem,
    TopicCluster,
    utcnow,
)
from relevx.process.cluster import TopicClusterer, build_cluster
from relevx.search.base import BaseSearchProvider
from relevx.synthesize.report import empty_report

logger = logging.getLogger(__name__)

FRESHNESS_FOR_FREQUENCY = {"daily": "pd", "weekly": "pw", "monthly": "pm"}


def initial_freshness(frequency: str) -> str:
    return FRESHNESS_FOR_FREQUENCY.get(frequency, "pw")


def widen_freshness(freshness: str) -> str | None:
    """Next wider window, or None once at a year."""
    index = FRESHNESS_ORDER.index(freshness)
    if index + 1 < len(FRESHNESS_ORDER):
        return FRESHNESS_ORDER[index + 1]
    return None


def _mentions_any(text: str, keywords: list[str]) -> bool:
    text = text.lower()
    return any(k.lower() in text for k in keywords if k.strip())


def passes_keyword_filter(content: ExtractedContent, project: Project) -> bool:
    """Reject excluded keywords; require at least one required keyword if any are set."""
    params = project.search_parameters
    text = " ".join([content.title, content.snippet, content.full_content or ""])
    if params.excluded_keywords and _mentions_any(text, params.excluded_keywords):
        return False
    if params.required_keywords and not _mentions_any(text, params.required_keywords):
        return False
    return True


@dataclass
class _RunState:
    """Mutable bookkeeping for a single run."""

    seen: set[str]
    freshness: str
    freshness_expanded: bool = False
    iterations: int = 0
    findings: list[Finding] = field(default_factory=list)
    processed: dict[str, ProcessedUrl] = field(default_factory=dict)
    query_stats: dict[str, QueryStats] = field(default_factory=dict)
    queries_generated: list[str] = field(default_factory=list)
    queries_executed: list[str] = field(default_factory=list)
    urls_fetched: int = 0
    urls_successful: int = 0


class ResearchOrchestrator:
    """Runs the bounded research loop for one project and persists the outcome.

    Collaborators are injected: the database connection, a research LLM
    (see ``relevx.llm.research.ResearchLLM``), a search provider, the
    content extractor and the topic clusterer.
    """

    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        llm,
        search: BaseSearchProvider,
        extractor: ContentExtractor,
        clusterer: TopicClusterer | None = None,
    ):
        self.config = config
        self.conn = conn
        self.llm = llm
        self.search = search
        self.extractor = extractor
        self.clusterer = clusterer or TopicClusterer(config)
        self.settings = get_research_config(config)
        self.results_per_query = get_search_config(config)["results_per_query"]
        self.clustering_enabled = get_clustering_config(config)["enabled"]

    async def run(
        self,
        user_id: str,
        project_id: str,
        delivery_status: str = "pending",
        max_iterations: int | None = None,
    ) -> ResearchResult:
        """Execute one research run.

        Never raises: failures mark the project ``error`` and come back as
        ``success=False`` with nothing persisted for the run.
        """
        started_at = utcnow()
        usage_before = self.llm.usage.snapshot()
        max_iterations = max_iterations or self.settings["max_iterations"]
        state: _RunState | None = None

        try:
            project = db.get_project(self.conn, user_id, project_id)
            history = db.get_search_history(self.conn, user_id, project_id)
            state = _RunState(
                seen=seen_urls(history),
                freshness=initial_freshness(project.frequency),
            )
            min_results = project.settings.min_results
            logger.info(
                "Research started for '%s' (%s, freshness %s, %d known URLs)",
                project.title, project.frequency,
                FRESHNESS_LABELS[state.freshness], len(state.seen),
            )

            # --- Iterate until enough findings or the cap ---
            for iteration in range(1, max_iterations + 1):
                state.iterations = iteration
                await self._iterate(project, history, state, iteration)
                logger.info(
                    "Iteration %d/%d: %d relevant findings so far",
                    iteration, max_iterations, len(state.findings),
                )
                if len(state.findings) >= min_results:
                    break
                if iteration < max_iterations:
                    self._maybe_widen(state)

            # --- Rank, cap and compile ---
            findings = sorted(
                state.findings, key=lambda f: f.relevancy_score, reverse=True
            )[: project.settings.max_results]

            if findings:
                report = await self._compile(project, findings)
            else:
                logger.info("No relevant findings for '%s'", project.title)
                report = empty_report(project)

            # --- Persist ---
            for finding in findings:
                state.processed[finding.normalized_url].was_included = True

            completed_at = utcnow()
            usage = self.llm.usage.snapshot() - usage_before
            stats = self._stats(findings, state, started_at, completed_at, usage)
            log = DeliveryLog(
                user_id=user_id,
                project_id=project_id,
                report_markdown=report.markdown,
                report_title=report.title,
                report_summary=report.summary,
                stats=stats,
                status=delivery_status,
                result_urls=[f.url for f in findings],
                research_started_at=started_at,
                research_completed_at=completed_at,
                delivered_at=completed_at if delivery_status == "success" else None,
            )

            def _merge(ledger: SearchHistory) -> None:
                merge_processed_urls(ledger, state.processed.values())
                merge_query_performance(ledger, state.query_stats, completed_at)

            log_id = db.save_research_output(self.conn, log, findings, _merge)

            logger.info(
                "Research finished for '%s': %d findings, %d iterations, %.1fs",
                project.title, len(findings), state.iterations,
                stats.research_duration_ms / 1000,
            )
            return ResearchResult(
                success=True,
                started_at=started_at,
                completed_at=completed_at,
                relevant_results=findings,
                iterations_used=state.iterations,
                queries_generated=state.queries_generated,
                queries_executed=state.queries_executed,
                urls_fetched=state.urls_fetched,
                urls_successful=state.urls_successful,
                report=report,
                delivery_log_id=log_id,
            )

        except Exception as exc:
            logger.exception("Research failed for project %s", project_id)
            error = f"{type(exc).__name__}: {exc}"
            db.update_project(
                self.conn, user_id, project_id, status="error", last_error=error
            )
            return ResearchResult(
                success=False,
                started_at=started_at,
                completed_at=utcnow(),
                iterations_used=state.iterations if state else 0,
                queries_generated=state.queries_generated if state else [],
                queries_executed=state.queries_executed if state else [],
                urls_fetched=state.urls_fetched if state else 0,
                urls_successful=state.urls_successful if state else 0,
                error=error,
            )

    def _maybe_widen(self, state: _RunState) -> None:
        """Widen the freshness window one step, at most once per run."""
        if state.freshness_expanded:
            return
        wider = widen_freshness(state.freshness)
        if wider is None:
            logger.info(
                "Already searching the %s, cannot widen", FRESHNESS_LABELS[state.freshness]
            )
            return
        logger.info(
            "Not enough results in the %s, widening to the %s",
            FRESHNESS_LABELS[state.freshness], FRESHNESS_LABELS[wider],
        )
        state.freshness = wider
        state.freshness_expanded = True

    def _filters(self, project: Project, freshness: str) -> SearchFilters:
        params = project.search_parameters
        return SearchFilters(
            freshness=freshness,
            include_domains=list(params.priority_domains),
            exclude_domains=list(params.excluded_domains),
            country=params.region,
            language=params.language,
            count=self.results_per_query,
        )

    async def _iterate(
        self,
        project: Project,
        history: SearchHistory,
        state: _RunState,
        iteration: int,
    ) -> None:
        params = project.search_parameters

        # --- Queries ---
        previous = top_queries(history) if iteration > 1 else None
        generated = await self.llm.generate_search_queries(
            project,
            iteration=iteration,
            previous_queries=previous,
            count=self.settings["queries_per_iteration"],
        )
        queries = list(dict.fromkeys(q.query for q in generated))
        state.queries_generated.extend(queries)

        # --- Search ---
        results = await self.search.search_multiple(
            queries, self._filters(project, state.freshness)
        )
        state.queries_executed.extend(queries)

        # --- Dedupe against everything seen this run and before ---
        candidates: list[tuple[SearchResultItem, str]] = []
        batch_seen: set[str] = set()
        for query in queries:
            items = results.get(query, [])
            state.query_stats.setdefault(query, QueryStats()).urls_found += len(items)
            for item in items:
                key = normalize_url(item.url)
                if key in state.seen or key in batch_seen:
                    continue
                if params.excluded_keywords and _mentions_any(
                    f"{item.title} {item.description}", params.excluded_keywords
                ):
                    continue
                batch_seen.add(key)
                candidates.append((item, query))

        candidates = candidates[: self.settings["max_candidates"]]
        for item, _ in candidates:
            key = normalize_url(item.url)
            state.seen.add(key)
            state.processed[key] = ProcessedUrl(url=item.url, normalized_url=key)

        if not candidates:
            logger.info("Iteration %d: no new URLs", iteration)
            return

        # --- Optional pre-fetch filter ---
        if self.llm.supports(Capability.FILTER_SEARCH_RESULTS):
            try:
                decisions = await self.llm.filter_search_results(
                    project, [item for item, _ in candidates]
                )
                dropped = {normalize_url(d.url) for d in decisions if not d.keep}
                if dropped:
                    candidates = [
                        (item, query) for item, query in candidates
                        if normalize_url(item.url) not in dropped
                    ]
                    logger.info("Pre-filter dropped %d URLs", len(dropped))
            except Exception as exc:
                logger.warning("Search result filtering failed, keeping all: %s", exc)

        if not candidates:
            return

        # --- Extract ---
        source_query = {normalize_url(item.url): query for item, query in candidates}
        search_engine = self.search.name
        extracted = await self.extractor.extract_multiple([item.url for item, _ in candidates])
        state.urls_fetched += len(extracted)
        usable = [e for e in extracted if e.fetch_status == "success" and e.snippet]
        state.urls_successful += len(usable)

        usable = [e for e in usable if passes_keyword_filter(e, project)]
        if not usable:
            logger.info("Iteration %d: all extracted content filtered out", iteration)
            return

        # --- Score ---
        batch_size = self.settings["relevancy_batch_size"]
        for start in range(0, len(usable), batch_size):
            batch = usable[start : start + batch_size]
            verdicts = await self.llm.analyze_relevancy(project, batch)
            by_url = {normalize_url(v.url): v for v in verdicts}
            for content in batch:
                verdict = by_url.get(content.normalized_url)
                if verdict is None:
                    continue
                state.processed[content.normalized_url].last_relevancy_score = verdict.score
                if not verdict.is_relevant:
                    continue
                query = source_query.get(content.normalized_url, "unknown")
                state.findings.append(
                    Finding(
                        user_id=project.user_id,
                        project_id=project.id,
                        url=content.url,
                        normalized_url=content.normalized_url,
                        source_query=query,
                        snippet=content.snippet,
                        relevancy_score=verdict.score,
                        relevancy_reason=verdict.reasoning,
                        key_points=list(verdict.key_points),
                        title=content.title,
                        author=content.metadata.get("author"),
                        published_date=content.metadata.get("published_date"),
                        image_url=content.metadata.get("image"),
                        full_content=content.full_content,
                        search_engine=search_engine,
                        word_count=content.word_count,
                        fetched_at=content.fetched_at,
                    )
                )
                stats = state.query_stats.setdefault(query, QueryStats())
                stats.relevant_urls_found += 1
                stats.relevancy_score_sum += verdict.score

    async def _cluster(self, findings: list[Finding]) -> list[TopicCluster]:
        if self.llm.supports(Capability.CLUSTER_BY_TOPIC):
            return await self.llm.cluster_by_topic(findings)
        if not self.clustering_enabled:
            return [build_cluster([f]) for f in findings]
        return self.clusterer.cluster(findings)

    async def _compile(self, project: Project, findings: list[Finding]) -> CompiledReport:
        clusters = await self._cluster(findings)
        if any(c.related_articles for c in clusters) and self.llm.supports(
            Capability.COMPILE_CLUSTERED_REPORT
        ):
            logger.info("Compiling clustered report from %d topics", len(clusters))
            report = await self.llm.compile_clustered_report(project, clusters)
        else:
            report = await self.llm.compile_report(project, findings)

        try:
            summary = await self.llm.generate_report_summary(project, report.markdown)
            if summary:
                report.summary = summary
        except Exception as exc:
            logger.warning("Executive summary failed, keeping compiled summary: %s", exc)
        return report

    def _stats(self, findings, state, started_at, completed_at, usage) -> DeliveryStats:
        average = (
            round(sum(f.relevancy_score for f in findings) / len(findings), 1)
            if findings else 0.0
        )
        success_rate = (
            round(state.urls_successful / state.urls_fetched * 100, 1)
            if state.urls_fetched else 0.0
        )
        return DeliveryStats(
            total_results=len(state.findings),
            included_results=len(findings),
            average_relevancy_score=average,
            search_queries_used=len(state.queries_executed),
            iterations_required=state.iterations,
            urls_fetched=state.urls_fetched,
            urls_successful=state.urls_successful,
            success_rate=success_rate,
            research_duration_ms=int((completed_at - started_at).total_seconds() * 1000),
            estimated_total_tokens=usage.total_tokens,
            estimated_cost_usd=round(usage.cost_usd, 6),
            freshness_used=state.freshness,
            freshness_expanded=state.freshness_expanded,
            llm_provider=self.llm.provider_name,
            llm_model=self.llm.model,
        )
