"""Search provider registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from relevx.search.base import BaseSearchProvider
    from relevx.search.ratelimit import RateLimiter

SEARCH_PROVIDERS: dict[str, type[BaseSearchProvider]] = {}


def register_search_provider(name: str):
    """Decorator to register a search provider."""

    def decorator(cls):
        SEARCH_PROVIDERS[name] = cls
        return cls

    return decorator


def build_search_provider(
    config: dict, rate_limiter: RateLimiter | None = None
) -> BaseSearchProvider:
    """Construct the configured search provider.

    Pass one ``rate_limiter`` to every provider built in the process so all
    calls share the same inter-request spacing.
    """
    from relevx.config import get_search_config

    name = get_search_config(config)["provider"]
    if name not in SEARCH_PROVIDERS:
        raise ValueError(f"Unknown search provider: {name}")
    return SEARCH_PROVIDERS[name](config, rate_limiter=rate_limiter)


# Import implementations to trigger registration
from relevx.search.brave import BraveSearchProvider  # noqa: E402, F401
from relevx.search.serper import SerperSearchProvider  # noqa: E402, F401
