"""Retry logic with exponential backoff for external calls."""

from __future__ import annotations

import asyncio
import logging
from typing import TypeVar

import httpx

from relevx.errors import SearchRateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_HTTP_CODES = {429, 500, 502, 503, 504}
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)
ANTHROPIC_RETRYABLE = (
    "RateLimitError", "OverloadedError",
    "InternalServerError", "APIConnectionError",
)


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for provider rate-limit failures (HTTP 429 or an explicit signal)."""
    if isinstance(exc, SearchRateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return type(exc).__name__ == "RateLimitError"


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    return min(base_delay * (2**attempt), max_delay)


async def retry_async(
    fn,
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    rate_limit_base_delay: float | None = None,
    rate_limit_max_delay: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (),
    **kwargs,
):
    """Call an async function with exponential backoff on transient failures.

    Retries on:
    - httpx timeout/connection errors
    - HTTP 429 (rate limit) and 5xx (server errors)
    - anthropic rate limit / overloaded errors
    - any exception type listed in ``retry_on``

    Rate-limit failures back off from ``rate_limit_base_delay`` (capped at
    ``rate_limit_max_delay``) when given, otherwise from ``base_delay``.
    """
    rl_base = rate_limit_base_delay if rate_limit_base_delay is not None else base_delay
    rl_max = rate_limit_max_delay if rate_limit_max_delay is not None else max_delay

    last_exc = None
    for attempt in range(max_retries + 1):
        try:
            return await fn(*args, **kwargs)
        except RETRYABLE_EXCEPTIONS as exc:
            last_exc = exc
            if attempt == max_retries:
                break
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning(
                "Retry %d/%d after %s: %s (waiting %.1fs)",
                attempt + 1, max_retries, type(exc).__name__, exc, delay,
            )
            await asyncio.sleep(delay)
        except httpx.HTTPStatusError as exc:
            last_exc = exc
            status = exc.response.status_code
            if status not in RETRYABLE_HTTP_CODES:
                raise
            if attempt == max_retries:
                break
            if status == 429:
                delay = _backoff(attempt, rl_base, rl_max)
            else:
                delay = _backoff(attempt, base_delay, max_delay)
            # Use Retry-After header if present (rate limiting)
            retry_after = exc.response.headers.get("retry-after")
            if retry_after:
                try:
                    delay = min(float(retry_after), rl_max if status == 429 else max_delay)
                except ValueError:
                    pass
            logger.warning(
                "Retry %d/%d after HTTP %d (waiting %.1fs)",
                attempt + 1, max_retries, status, delay,
            )
            await asyncio.sleep(delay)
        except Exception as exc:
            exc_name = type(exc).__name__
            if not (
                isinstance(exc, SearchRateLimitError)
                or isinstance(exc, retry_on)
                or exc_name in ANTHROPIC_RETRYABLE
            ):
                raise
            last_exc = exc
            if attempt == max_retries:
                break
            if is_rate_limit_error(exc):
                delay = _backoff(attempt, rl_base, rl_max)
            else:
                delay = _backoff(attempt, base_delay, max_delay)
            logger.warning(
                "Retry %d/%d after %s: %s (waiting %.1fs)",
                attempt + 1, max_retries, exc_name, exc, delay,
            )
            await asyncio.sleep(delay)

    raise last_exc  # type: ignore[misc]
