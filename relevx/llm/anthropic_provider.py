"""Anthropic Messages API provider."""

from __future__ import annotations

import anthropic

from relevx.llm import register_provider
from relevx.llm.base import BaseLLMProvider, CompletionRequest, LLMResponse

JSON_ONLY_INSTRUCTION = "Respond with a single valid JSON object and nothing else."


def system_prompt(request: CompletionRequest) -> str:
    """The Messages API has no JSON mode, so ask for it in the system prompt."""
    if not request.json_mode:
        return request.system
    if not request.system:
        return JSON_ONLY_INSTRUCTION
    return f"{request.system}\n\n{JSON_ONLY_INSTRUCTION}"


@register_provider("anthropic")
class AnthropicProvider(BaseLLMProvider):

    @property
    def provider_name(self) -> str:
        return "anthropic"

    async def _send(self, request: CompletionRequest) -> LLMResponse:
        # Backoff lives in complete(); the SDK must not retry on its own
        client = anthropic.AsyncAnthropic(
            api_key=self.api_key, max_retries=0, timeout=self.timeout,
        )
        params = dict(
            model=request.model,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            messages=[{"role": "user", "content": request.prompt}],
        )
        system = system_prompt(request)
        if system:
            params["system"] = system

        message = await client.messages.create(**params)
        return LLMResponse(
            text="".join(getattr(block, "text", "") for block in message.content),
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            model=request.model,
            finish_reason=message.stop_reason or "",
        )
