"""Typed response schemas for LLM tasks and tolerant JSON extraction."""

from __future__ import annotations

import json
import re
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relevx.errors import MalformedResponseError

QUERY_TYPES = {"broad", "specific", "question", "temporal"}

M = TypeVar("M", bound=BaseModel)


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class GeneratedQuery(_Response):
    query: str = Field(min_length=1)
    type: str = "broad"
    reasoning: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value):
        value = str(value or "").lower().strip()
        return value if value in QUERY_TYPES else "broad"


class QueryGenerationResponse(_Response):
    queries: list[GeneratedQuery] = Field(min_length=1)


class FilterDecision(_Response):
    url: str
    keep: bool
    reasoning: str = ""


class FilterResponse(_Response):
    results: list[FilterDecision]


class RelevancyVerdict(_Response):
    url: str
    score: float = Field(ge=0, le=100)
    reasoning: str = ""
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    is_relevant: bool | None = Field(default=None, alias="isRelevant")


class RelevancyResponse(_Response):
    results: list[RelevancyVerdict]


class ReportResponse(_Response):
    markdown: str = Field(min_length=1)
    title: str = ""
    summary: str = ""


class SummaryResponse(_Response):
    summary: str = Field(min_length=1)


def _normalize_quotes(text: str) -> str:
    """Replace smart/curly quotes with straight quotes for JSON parsing."""
    return (
        text
        .replace("\u201c", '"')   # left double quote
        .replace("\u201d", '"')   # right double quote
        .replace("\u2018", "'")   # left single quote
        .replace("\u2019", "'")   # right single quote
    )


def _try_parse(text: str) -> dict | None:
    """Try json.loads with and without quote normalization."""
    for candidate in (text, _normalize_quotes(text)):
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(data, dict):
            return data
    return None


def extract_json(text: str) -> dict | None:
    """Extract a JSON object from LLM output that may contain fences or extra text."""
    result = _try_parse(text)
    if result is not None:
        return result

    fenced = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if fenced:
        result = _try_parse(fenced.group(1))
        if result is not None:
            return result

    brace = re.search(r"\{.*\}", text, re.DOTALL)
    if brace:
        return _try_parse(brace.group(0))

    return None


def parse_response(task: str, text: str, schema: type[M]) -> M:
    """Validate LLM output against ``schema`` or raise MalformedResponseError."""
    data = extract_json(text or "")
    if data is None:
        raise MalformedResponseError(task, "no JSON object in response", text or "")
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponseError(
            task, f"schema validation failed: {exc.error_count()} error(s)", text
        ) from exc
