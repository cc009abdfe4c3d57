"""Research tasks on top of the completion providers.

``ResearchLLM`` is the model-facing half of a research run: it builds each
task's prompt, calls the provider configured for that task, and validates
the JSON reply. A reply that fails validation raises
``MalformedResponseError`` and is retried like a transport failure.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel

from relevx.config import get_llm_retry_config, get_llm_task_config
from relevx.errors import MalformedResponseError
from relevx.history import normalize_url
from relevx.llm import build_provider, prompts
from relevx.llm.base import BaseLLMProvider
from relevx.llm.cost import UsageTracker
from relevx.llm.schemas import (
    FilterDecision,
    FilterResponse,
    GeneratedQuery,
    QueryGenerationResponse,
    RelevancyResponse,
    RelevancyVerdict,
    ReportResponse,
    SummaryResponse,
    parse_response,
)
from relevx.models import (
    CompiledReport,
    ExtractedContent,
    Finding,
    Project,
    QueryPerformance,
    SearchResultItem,
    TopicCluster,
)
from relevx.retry import retry_async
from relevx.synthesize.report import (
    format_clusters,
    format_findings,
    format_report_date,
)

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """Optional operations a research LLM may offer."""

    FILTER_SEARCH_RESULTS = "filter_search_results"
    COMPILE_CLUSTERED_REPORT = "compile_clustered_report"
    CLUSTER_BY_TOPIC = "cluster_by_topic"


def _average_score(findings: list[Finding]) -> float:
    if not findings:
        return 0.0
    return round(sum(f.relevancy_score for f in findings) / len(findings), 1)


class ResearchLLM:
    """LLM operations used by the research orchestrator."""

    capabilities = frozenset(
        {Capability.FILTER_SEARCH_RESULTS, Capability.COMPILE_CLUSTERED_REPORT}
    )

    def __init__(self, config: dict, usage: UsageTracker | None = None):
        self.config = config
        self.usage = usage or UsageTracker()
        self.retry = get_llm_retry_config(config)
        self._providers: dict[str, BaseLLMProvider] = {}

    def supports(self, capability: Capability | str) -> bool:
        return Capability(capability) in self.capabilities

    @property
    def provider_name(self) -> str:
        return get_llm_task_config(self.config, "relevancy_analysis")["provider_name"]

    @property
    def model(self) -> str:
        return get_llm_task_config(self.config, "relevancy_analysis")["model"]

    def _provider(self, task: str) -> tuple[BaseLLMProvider, dict]:
        task_cfg = get_llm_task_config(self.config, task)
        # One instance per configured provider, all feeding the same usage tracker
        name = task_cfg["provider_name"]
        if name not in self._providers:
            self._providers[name] = build_provider(task_cfg, usage=self.usage)
        return self._providers[name], task_cfg

    async def _run(self, task: str, prompt: str, system: str, schema: type[BaseModel]):
        provider, task_cfg = self._provider(task)

        async def _call():
            response = await provider.complete(
                prompt,
                system=system,
                model=task_cfg["model"],
                temperature=task_cfg["temperature"],
                max_tokens=task_cfg["max_tokens"],
                json_mode=task_cfg["json_mode"],
            )
            return parse_response(task, response.text, schema)

        return await retry_async(
            _call,
            max_retries=max(0, self.retry["attempts"] - 1),
            base_delay=self.retry["base_delay"],
            max_delay=self.retry["max_delay"],
            retry_on=(MalformedResponseError,),
        )

    async def generate_search_queries(
        self,
        project: Project,
        iteration: int = 1,
        previous_queries: list[QueryPerformance] | None = None,
        count: int = 5,
    ) -> list[GeneratedQuery]:
        """Fresh search queries; later iterations are told to broaden."""
        params = project.search_parameters
        additional_context = ""
        if params.required_keywords:
            additional_context = prompts.KEYWORD_CONTEXT.format(
                keywords=", ".join(params.required_keywords)
            )

        performance_context = ""
        if previous_queries:
            listed = "\n".join(
                f'- "{q.query}" ({q.success_rate:.0f}% success)' for q in previous_queries
            )
            performance_context = prompts.PERFORMANCE_CONTEXT.format(queries=listed)

        guidance = ""
        if iteration > 1:
            guidance = prompts.ITERATION_GUIDANCE.get(
                iteration, prompts.ITERATION_GUIDANCE[max(prompts.ITERATION_GUIDANCE)]
            )

        prompt = prompts.QUERY_GENERATION.format(
            description=project.description,
            additional_context=additional_context,
            performance_context=performance_context,
            iteration_guidance=guidance,
            count=count,
        )
        parsed = await self._run(
            "query_generation", prompt, prompts.SYSTEM_QUERY_GENERATION,
            QueryGenerationResponse,
        )

        queries, seen = [], set()
        for q in parsed.queries:
            key = q.query.strip().lower()
            if key and key not in seen:
                seen.add(key)
                queries.append(q)
        logger.info("Generated %d queries (iteration %d)", len(queries), iteration)
        return queries

    async def filter_search_results(
        self, project: Project, results: list[SearchResultItem]
    ) -> list[FilterDecision]:
        """Keep/discard decisions from titles and snippets alone."""
        if not results:
            return []
        listed = "\n\n".join(
            f"[{i}] URL: {r.url}\nTitle: {r.title}\nSnippet: {r.description}"
            for i, r in enumerate(results, 1)
        )
        prompt = prompts.SEARCH_FILTERING.format(
            description=project.description, results=listed
        )
        parsed = await self._run(
            "search_filtering", prompt, prompts.SYSTEM_SEARCH_FILTERING, FilterResponse
        )
        return parsed.results

    async def analyze_relevancy(
        self, project: Project, contents: list[ExtractedContent]
    ) -> list[RelevancyVerdict]:
        """Score extracted pages; ``is_relevant`` follows the project threshold."""
        if not contents:
            return []
        threshold = project.settings.relevancy_threshold
        params = project.search_parameters

        requirements = []
        if params.required_keywords:
            requirements.append(f"Required keywords: {', '.join(params.required_keywords)}")
        if params.excluded_keywords:
            requirements.append(f"Excluded keywords: {', '.join(params.excluded_keywords)}")

        listed = "\n\n".join(
            f"[{i}] URL: {c.url}\nTitle: {c.title}\n"
            f"Published: {c.metadata.get('published_date') or 'unknown'}\n"
            f"Content: {c.snippet}"
            for i, c in enumerate(contents, 1)
        )
        prompt = prompts.RELEVANCY_ANALYSIS.format(
            description=project.description,
            requirements="\n".join(requirements),
            threshold=threshold,
            contents=listed,
        )
        parsed = await self._run(
            "relevancy_analysis", prompt, prompts.SYSTEM_RELEVANCY, RelevancyResponse
        )

        known = {c.normalized_url: c.url for c in contents}
        verdicts = []
        for verdict in parsed.results:
            url = known.get(normalize_url(verdict.url))
            if url is None:
                logger.debug("Ignoring verdict for unknown URL %s", verdict.url)
                continue
            verdict.url = url
            verdict.is_relevant = verdict.score >= threshold
            verdicts.append(verdict)
        return verdicts

    async def compile_report(self, project: Project, findings: list[Finding]) -> CompiledReport:
        prompt = prompts.REPORT_COMPILATION.format(
            title=project.title,
            description=project.description,
            frequency=project.frequency,
            report_date=format_report_date(tz=project.timezone),
            results=format_findings(findings),
        )
        parsed = await self._run(
            "report_compilation", prompt, prompts.SYSTEM_REPORT, ReportResponse
        )
        return CompiledReport(
            markdown=parsed.markdown,
            title=parsed.title or project.title,
            summary=parsed.summary,
            result_count=len(findings),
            average_score=_average_score(findings),
        )

    async def compile_clustered_report(
        self, project: Project, clusters: list[TopicCluster]
    ) -> CompiledReport:
        prompt = prompts.CLUSTERED_REPORT_COMPILATION.format(
            title=project.title,
            description=project.description,
            frequency=project.frequency,
            report_date=format_report_date(tz=project.timezone),
            clusters=format_clusters(clusters),
        )
        parsed = await self._run(
            "clustered_report_compilation", prompt,
            prompts.SYSTEM_CLUSTERED_REPORT, ReportResponse,
        )
        findings = [f for c in clusters for f in c.members]
        return CompiledReport(
            markdown=parsed.markdown,
            title=parsed.title or project.title,
            summary=parsed.summary,
            result_count=len(findings),
            average_score=_average_score(findings),
        )

    async def generate_report_summary(self, project: Project, markdown: str) -> str:
        """Tighter executive summary regenerated from the finished report."""
        prompt = prompts.REPORT_SUMMARY.format(
            title=project.title, description=project.description, markdown=markdown,
        )
        parsed = await self._run(
            "report_summary", prompt, prompts.SYSTEM_SUMMARY, SummaryResponse
        )
        return parsed.summary.strip()
