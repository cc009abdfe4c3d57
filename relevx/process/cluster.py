"""Group findings that cover the same story by embedding similarity."""

from __future__ import annotations

import logging
import uuid
from typing import Callable

import numpy as np

from relevx.config import get_clustering_config
from relevx.history import publication_name
from relevx.models import ArticleSource, Finding, TopicCluster
from relevx.process.disjoint_set import DisjointSet
from relevx.process.embeddings import embed_texts, similarity_matrix

logger = logging.getLogger(__name__)

EMBED_SNIPPET_CHARS = 500
KEY_POINT_PREFIX = 20
KEY_POINT_LENGTH_SLACK = 10


def embedding_text(finding: Finding) -> str:
    """Text that represents a finding for similarity: title, key points, snippet."""
    parts = [finding.title, *finding.key_points, finding.snippet[:EMBED_SNIPPET_CHARS]]
    return ". ".join(p.strip() for p in parts if p and p.strip())


def _is_duplicate_point(a: str, b: str) -> bool:
    a, b = a.lower().strip(), b.lower().strip()
    if a in b or b in a:
        return True
    return (
        len(a) > KEY_POINT_PREFIX
        and len(b) > KEY_POINT_PREFIX
        and abs(len(a) - len(b)) < KEY_POINT_LENGTH_SLACK
        and a[:KEY_POINT_PREFIX] == b[:KEY_POINT_PREFIX]
    )


def merge_key_points(findings: list[Finding]) -> list[str]:
    """Union of all key points, dropping near-duplicates of ones already kept."""
    merged: list[str] = []
    for finding in findings:
        for point in finding.key_points:
            if not point.strip():
                continue
            if not any(_is_duplicate_point(point, kept) for kept in merged):
                merged.append(point)
    return merged


def build_cluster(members: list[Finding]) -> TopicCluster:
    """Cluster from members; the highest-scoring member leads."""
    ranked = sorted(members, key=lambda f: f.relevancy_score, reverse=True)
    primary = ranked[0]
    return TopicCluster(
        id=uuid.uuid4().hex,
        topic=primary.title or "Related Articles",
        primary_article=primary,
        related_articles=ranked[1:],
        all_sources=[
            ArticleSource(
                name=publication_name(f.url), url=f.url, published_date=f.published_date
            )
            for f in ranked
        ],
        combined_key_points=merge_key_points(ranked),
        average_score=round(sum(f.relevancy_score for f in ranked) / len(ranked), 1),
    )


class TopicClusterer:
    """Union findings whose embeddings are at least ``threshold`` cosine-similar."""

    def __init__(
        self,
        config: dict,
        embed: Callable[[list[str]], np.ndarray] | None = None,
    ):
        cfg = get_clustering_config(config)
        self.threshold = cfg["similarity_threshold"]
        self.model_name = cfg["model"]
        self._embed = embed

    def embed(self, texts: list[str]) -> np.ndarray:
        if self._embed is not None:
            return self._embed(texts)
        return embed_texts(texts, self.model_name)

    def cluster(self, findings: list[Finding]) -> list[TopicCluster]:
        """Clusters sorted by average score, best first."""
        if not findings:
            return []
        if len(findings) < 2:
            return [build_cluster([f]) for f in findings]

        embeddings = np.asarray(self.embed([embedding_text(f) for f in findings]))
        sim = similarity_matrix(embeddings)

        groups = DisjointSet(len(findings))
        for i in range(len(findings)):
            for j in range(i + 1, len(findings)):
                if sim[i, j] >= self.threshold:
                    groups.union(i, j)

        clusters = [build_cluster([findings[i] for i in group]) for group in groups.groups()]
        clusters.sort(key=lambda c: c.average_score, reverse=True)

        multi = sum(1 for c in clusters if c.related_articles)
        logger.info(
            "Clustered %d findings into %d topics (%d multi-source, threshold=%.2f)",
            len(findings), len(clusters), multi, self.threshold,
        )
        return clusters
