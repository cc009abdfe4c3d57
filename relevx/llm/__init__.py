"""LLM provider registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from relevx.llm.base import BaseLLMProvider
    from relevx.llm.cost import UsageTracker

PROVIDERS: dict[str, type[BaseLLMProvider]] = {}


def register_provider(name: str):
    """Decorator to register an LLM provider."""

    def decorator(cls):
        PROVIDERS[name] = cls
        return cls

    return decorator


def build_provider(task_cfg: dict, usage: UsageTracker | None = None) -> BaseLLMProvider:
    """Instantiate the provider described by ``get_llm_task_config`` output."""
    provider_type = task_cfg["provider_type"]
    if provider_type not in PROVIDERS:
        raise ValueError(f"Unknown LLM provider type: {provider_type}")
    return PROVIDERS[provider_type](
        api_key=task_cfg["api_key"],
        base_url=task_cfg["base_url"],
        default_model=task_cfg["model"],
        max_retries=task_cfg["max_retries"],
        timeout=task_cfg["timeout"],
        usage=usage,
    )


# Import implementations to trigger registration
from relevx.llm.anthropic_provider import AnthropicProvider  # noqa: E402, F401
from relevx.llm.openai_compat import OpenAICompatibleProvider  # noqa: E402, F401
