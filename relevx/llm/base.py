"""Provider interface shared by every LLM backend."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from relevx.llm.cost import UsageTracker, estimate_tokens
from relevx.retry import retry_async

logger = logging.getLogger(__name__)

TRUNCATION_REASONS = {"length", "max_tokens"}


@dataclass
class CompletionRequest:
    """One prompt, fully resolved against provider defaults."""

    prompt: str
    system: str
    model: str
    temperature: float = 0.3
    max_tokens: int = 2000
    json_mode: bool = False


@dataclass
class LLMResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    cost_usd: float = 0.0
    finish_reason: str = ""

    @property
    def truncated(self) -> bool:
        return self.finish_reason in TRUNCATION_REASONS


class BaseLLMProvider(ABC):
    """Base class for LLM backends.

    Subclasses implement ``_send`` for a single request. ``complete`` adds
    transport retries and records token usage on the shared tracker.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        default_model: str,
        max_retries: int = 3,
        timeout: int = 120,
        usage: UsageTracker | None = None,
    ):
        self.api_key, self.base_url = api_key, base_url
        self.default_model = default_model
        self.max_retries, self.timeout = max_retries, timeout
        self.usage = usage or UsageTracker()

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @abstractmethod
    async def _send(self, request: CompletionRequest) -> LLMResponse:
        """Issue one completion request without retrying."""

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Send a completion request, retrying transient failures."""
        request = CompletionRequest(
            prompt=prompt,
            system=system,
            model=model or self.default_model,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
        response = await retry_async(self._send, request, max_retries=self.max_retries)
        self._record_usage(response, request)
        if response.truncated:
            logger.warning(
                "%s reply from %s stopped at max_tokens=%d",
                self.provider_name, request.model, request.max_tokens,
            )
        return response

    def _record_usage(self, response: LLMResponse, request: CompletionRequest) -> None:
        # Some local servers omit usage; fall back to a character estimate
        if not (response.input_tokens or response.output_tokens):
            response.input_tokens = estimate_tokens(request.system + request.prompt)
            response.output_tokens = estimate_tokens(response.text)
        response.cost_usd = self.usage.track(
            response.input_tokens, response.output_tokens, response.model,
        )
