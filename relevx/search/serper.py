"""Serper.dev (Google News) search provider."""

from __future__ import annotations

import logging

from relevx.errors import SearchRateLimitError
from relevx.models import SearchFilters, SearchResultItem
from relevx.search import register_search_provider
from relevx.search.base import BaseSearchProvider

logger = logging.getLogger(__name__)

SERPER_API_URL = "https://google.serper.dev/news"

TBS_FRESHNESS = {"pd": "qdr:d", "pw": "qdr:w", "pm": "qdr:m", "py": "qdr:y"}


@register_search_provider("serper")
class SerperSearchProvider(BaseSearchProvider):
    """Query the Serper.dev news search API."""

    @property
    def name(self) -> str:
        return "Serper"

    def _payload(self, query: str, filters: SearchFilters) -> dict:
        payload: dict = {"q": query, "num": filters.count}
        if filters.offset and filters.count:
            payload["page"] = filters.offset // filters.count + 1
        if filters.country:
            payload["gl"] = filters.country.lower()
        if filters.language:
            payload["hl"] = filters.language
        if filters.freshness in TBS_FRESHNESS:
            payload["tbs"] = TBS_FRESHNESS[filters.freshness]
        return payload

    async def _do_search(self, query: str, filters: SearchFilters) -> list[SearchResultItem]:
        headers = {
            "X-API-KEY": self.api_key,
            "Content-Type": "application/json",
        }

        async with self._client() as client:
            resp = await client.post(
                SERPER_API_URL, json=self._payload(query, filters), headers=headers
            )
            if resp.status_code == 429:
                raise SearchRateLimitError(f"Serper rate limit hit for '{query}'")
            resp.raise_for_status()
            data = resp.json()

        results = []
        for item in data.get("news", []):
            url = item.get("link", "")
            title = item.get("title", "")
            if not url or not title:
                continue
            results.append(
                SearchResultItem(
                    title=title,
                    url=url,
                    description=item.get("snippet", ""),
                    published_date=item.get("date"),
                    thumbnail=item.get("imageUrl"),
                    source=item.get("source", self.name),
                )
            )

        logger.info("Serper returned %d results for '%s'", len(results), query)
        return results
