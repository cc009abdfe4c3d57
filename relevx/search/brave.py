"""Brave Web Search provider."""

from __future__ import annotations

import logging

from relevx.errors import SearchRateLimitError
from relevx.models import SearchFilters, SearchResultItem
from relevx.search import register_search_provider
from relevx.search.base import BaseSearchProvider

logger = logging.getLogger(__name__)

BRAVE_API_URL = "https://api.search.brave.com/res/v1/web/search"


@register_search_provider("brave")
class BraveSearchProvider(BaseSearchProvider):
    """Query the Brave Search web endpoint."""

    @property
    def name(self) -> str:
        return "Brave Search"

    def _params(self, query: str, filters: SearchFilters) -> dict:
        params: dict = {
            "q": query,
            "count": filters.count,
            "safesearch": self.settings["safesearch"],
        }
        if filters.offset:
            params["offset"] = filters.offset
        if filters.country:
            params["country"] = filters.country
        if filters.language:
            params["search_lang"] = filters.language
        if filters.freshness:
            params["freshness"] = filters.freshness
        elif filters.date_from and filters.date_to:
            params["freshness"] = f"{filters.date_from}to{filters.date_to}"
        return params

    async def _do_search(self, query: str, filters: SearchFilters) -> list[SearchResultItem]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip",
            "X-Subscription-Token": self.api_key,
        }

        async with self._client() as client:
            resp = await client.get(
                BRAVE_API_URL, params=self._params(query, filters), headers=headers
            )
            if resp.status_code == 429:
                raise SearchRateLimitError(f"Brave rate limit hit for '{query}'")
            resp.raise_for_status()
            data = resp.json()

        error = data.get("error") or {}
        if error.get("code") == "RATE_LIMITED":
            raise SearchRateLimitError(error.get("detail", "RATE_LIMITED"))

        results = []
        for item in data.get("web", {}).get("results", []):
            url = item.get("url", "")
            if not url:
                continue
            results.append(
                SearchResultItem(
                    title=item.get("title", ""),
                    url=url,
                    description=item.get("description", ""),
                    published_date=item.get("age") or item.get("page_age"),
                    thumbnail=(item.get("thumbnail") or {}).get("src"),
                    source=self.name,
                )
            )

        logger.info("Brave returned %d results for '%s'", len(results), query)
        return results
