"""Token and cost accounting for LLM calls."""

from __future__ import annotations

import math
from dataclasses import dataclass

# USD per 1M tokens (input, output)
MODEL_PRICING = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.0),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.00, 8.00),
    "deepseek-chat": (0.14, 0.28),
    "claude-sonnet-4-5-20250514": (3.0, 15.0),
    "claude-haiku-4-5-20251001": (0.80, 4.0),
}

DEFAULT_PRICING = (1.0, 2.0)


def estimate_tokens(text: str) -> int:
    """Rough token count at ~4 characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_cost(input_tokens: int, output_tokens: int, model: str) -> float:
    """Rough cost estimate based on known pricing (per 1M tokens)."""
    input_rate, output_rate = MODEL_PRICING.get(model, DEFAULT_PRICING)
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


@dataclass
class UsageSnapshot:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __sub__(self, other: UsageSnapshot) -> UsageSnapshot:
        return UsageSnapshot(
            self.input_tokens - other.input_tokens,
            self.output_tokens - other.output_tokens,
            self.cost_usd - other.cost_usd,
        )


class UsageTracker:
    """Accumulates token usage across calls."""

    def __init__(self):
        self.input_tokens = 0
        self.output_tokens = 0
        self.cost_usd = 0.0
        self.calls = 0

    def track(self, input_tokens: int, output_tokens: int, model: str) -> float:
        cost = estimate_cost(input_tokens, output_tokens, model)
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost_usd += cost
        self.calls += 1
        return cost

    def snapshot(self) -> UsageSnapshot:
        return UsageSnapshot(self.input_tokens, self.output_tokens, self.cost_usd)
