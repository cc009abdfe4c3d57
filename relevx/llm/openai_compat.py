"""Chat completions over any OpenAI-compatible endpoint (OpenAI, DeepSeek, Ollama, vLLM)."""

from __future__ import annotations

import httpx

from relevx.llm import register_provider
from relevx.llm.base import BaseLLMProvider, CompletionRequest, LLMResponse

DEFAULT_BASE_URL = "https://api.openai.com/v1"


def chat_payload(request: CompletionRequest) -> dict:
    """Request body for ``POST /chat/completions``."""
    messages = []
    if request.system:
        messages.append({"role": "system", "content": request.system})
    messages.append({"role": "user", "content": request.prompt})

    body = dict(
        model=request.model,
        messages=messages,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
    )
    if request.json_mode:
        body["response_format"] = {"type": "json_object"}
    return body


@register_provider("openai_compatible")
class OpenAICompatibleProvider(BaseLLMProvider):

    @property
    def provider_name(self) -> str:
        return "openai_compatible"

    @property
    def endpoint(self) -> str:
        return f"{(self.base_url or DEFAULT_BASE_URL).rstrip('/')}/chat/completions"

    def _auth_headers(self) -> dict:
        # Local servers usually run keyless
        if not self.api_key:
            return {"Content-Type": "application/json"}
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    async def _send(self, request: CompletionRequest) -> LLMResponse:
        async with httpx.AsyncClient(timeout=self.timeout) as http:
            reply = await http.post(
                self.endpoint, json=chat_payload(request), headers=self._auth_headers(),
            )
            reply.raise_for_status()
            body = reply.json()

        first = body["choices"][0]
        usage = body.get("usage") or {}
        return LLMResponse(
            text=first["message"].get("content") or "",
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=request.model,
            finish_reason=first.get("finish_reason") or "",
        )
