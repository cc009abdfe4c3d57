"""Abstract base class for web search providers."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from relevx.config import get_search_config
from relevx.models import SearchFilters, SearchResultItem
from relevx.retry import is_rate_limit_error, retry_async
from relevx.search.ratelimit import RateLimiter

logger = logging.getLogger(__name__)


def build_query(query: str, filters: SearchFilters) -> str:
    """Render domain filters into ``site:`` operators."""
    parts = [query]
    if filters.include_domains:
        sites = " OR ".join(f"site:{d}" for d in filters.include_domains)
        parts.append(f"({sites})")
    for domain in filters.exclude_domains:
        parts.append(f"-site:{domain}")
    return " ".join(parts)


class BaseSearchProvider(ABC):
    """Base class for search backends.

    Owns its credentials and a rate limiter; every request, retries
    included, passes through the limiter first.
    """

    def __init__(
        self,
        config: dict,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.settings = get_search_config(config)
        self.api_key = self.settings["api_key"]
        self.rate_limiter = rate_limiter or RateLimiter(self.settings["min_interval_seconds"])
        self.transport = transport

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        ...

    @abstractmethod
    async def _do_search(self, query: str, filters: SearchFilters) -> list[SearchResultItem]:
        """Issue one request for an already-rendered query."""
        ...

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings["timeout"], transport=self.transport)

    async def _limited_search(self, query: str, filters: SearchFilters) -> list[SearchResultItem]:
        await self.rate_limiter.wait()
        return await self._do_search(query, filters)

    async def search(
        self, query: str, filters: SearchFilters | None = None
    ) -> list[SearchResultItem]:
        """Search with rate limiting and backoff; raises after the last attempt."""
        filters = filters or SearchFilters()
        return await retry_async(
            self._limited_search,
            build_query(query, filters),
            filters,
            max_retries=self.settings["max_retries"],
            base_delay=self.settings["base_delay"],
            max_delay=self.settings["max_delay"],
            rate_limit_base_delay=self.settings["rate_limit_base_delay"],
            rate_limit_max_delay=self.settings["rate_limit_max_delay"],
        )

    async def search_multiple(
        self, queries: list[str], filters: SearchFilters | None = None
    ) -> dict[str, list[SearchResultItem]]:
        """Run queries one after another; a failed query yields no results."""
        results: dict[str, list[SearchResultItem]] = {}
        for query in queries:
            try:
                results[query] = await self.search(query, filters)
            except Exception as exc:
                logger.warning("%s search failed for '%s': %s", self.name, query, exc)
                results[query] = []
                if is_rate_limit_error(exc):
                    await asyncio.sleep(self.settings["rate_limit_cooldown"])
        return results
