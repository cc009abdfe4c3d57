"""Format findings and clusters for report compilation."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from relevx.history import publication_name
from relevx.models import CompiledReport, Finding, Project, TopicCluster, utcnow

NO_RESULTS_MESSAGE = "No relevant results found for this research period."
NO_RESULTS_SUMMARY = "No relevant results were found."

SNIPPET_PROMPT_CHARS = 800


def format_report_date(when: datetime | None = None, tz: str = "UTC") -> str:
    """Human-readable date in the project's timezone, e.g. ``January 8, 2026``."""
    local = (when or utcnow()).astimezone(ZoneInfo(tz))
    return f"{local:%B} {local.day}, {local.year}"


def format_finding(finding: Finding, index: int) -> str:
    """Render one finding as a numbered prompt block."""
    lines = [
        f"[{index}] {finding.title or finding.url}",
        f"Publication: {publication_name(finding.url)}",
        f"URL: {finding.url}",
    ]
    if finding.published_date:
        lines.append(f"Published: {finding.published_date}")
    if finding.author:
        lines.append(f"Author: {finding.author}")
    if finding.key_points:
        lines.append("Key points:")
        lines.extend(f"- {point}" for point in finding.key_points)
    lines.append(f"Content: {finding.snippet[:SNIPPET_PROMPT_CHARS]}")
    return "\n".join(lines)


def format_findings(findings: list[Finding]) -> str:
    return "\n\n".join(format_finding(f, i) for i, f in enumerate(findings, 1))


def format_cluster(cluster: TopicCluster, index: int) -> str:
    """Render a cluster with its merged key points and every source."""
    primary = cluster.primary_article
    lines = [
        f"CLUSTER {index}: {cluster.topic}",
        f"Articles: {len(cluster.members)}",
        f"Primary content: {primary.snippet[:SNIPPET_PROMPT_CHARS]}",
    ]
    if cluster.combined_key_points:
        lines.append("Combined key points:")
        lines.extend(f"- {point}" for point in cluster.combined_key_points)
    lines.append("Sources:")
    for source in cluster.all_sources:
        date = f" | {source.published_date}" if source.published_date else ""
        lines.append(f"- {source.name}: {source.url}{date}")
    return "\n".join(lines)


def format_clusters(clusters: list[TopicCluster]) -> str:
    return "\n\n".join(format_cluster(c, i) for i, c in enumerate(clusters, 1))


def empty_report(project: Project) -> CompiledReport:
    """Report delivered when a run ends without relevant findings."""
    return CompiledReport(
        markdown=f"# {project.title}\n\n{NO_RESULTS_MESSAGE}",
        title=project.title,
        summary=NO_RESULTS_SUMMARY,
        result_count=0,
        average_score=0.0,
    )
