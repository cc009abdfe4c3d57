"""Tests for retry logic."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from relevx.errors import MalformedResponseError, SearchRateLimitError
from relevx.retry import is_rate_limit_error, retry_async


def _status_error(code: int, headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com")
    response = httpx.Response(code, headers=headers or {}, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


@pytest.mark.asyncio
async def test_retry_succeeds_on_first_try():
    """No retries needed when function succeeds."""
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        return "ok"

    result = await retry_async(fn)
    assert result == "ok"
    assert call_count == 1


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failure():
    """Retries on transient error and eventually succeeds."""
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            raise ConnectionError("transient")
        return "ok"

    result = await retry_async(fn, max_retries=3, base_delay=0.01)
    assert result == "ok"
    assert call_count == 3


@pytest.mark.asyncio
async def test_retry_exhausts_retries():
    """Raises after max retries exhausted."""

    async def fn():
        raise TimeoutError("always fails")

    with pytest.raises(TimeoutError, match="always fails"):
        await retry_async(fn, max_retries=2, base_delay=0.01)


@pytest.mark.asyncio
async def test_retry_does_not_retry_non_transient():
    """Non-retryable exceptions are raised immediately."""
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError, match="bad input"):
        await retry_async(fn, max_retries=3, base_delay=0.01)
    assert call_count == 1


@pytest.mark.asyncio
async def test_retry_does_not_retry_client_errors():
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        raise _status_error(400)

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(fn, max_retries=3, base_delay=0)
    assert call_count == 1


@pytest.mark.asyncio
async def test_retry_on_extra_exception_types():
    """Exception types passed via retry_on are retried like transient errors."""
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise MalformedResponseError("relevancy_analysis", "no JSON", "oops")
        return "parsed"

    assert await retry_async(fn, max_retries=2, base_delay=0, retry_on=(MalformedResponseError,)) == "parsed"
    assert call_count == 2


@pytest.mark.asyncio
async def test_malformed_response_not_retried_without_opt_in():
    fn = AsyncMock(side_effect=MalformedResponseError("t", "bad"))
    with pytest.raises(MalformedResponseError):
        await retry_async(fn, max_retries=3, base_delay=0)
    assert fn.await_count == 1


@pytest.mark.asyncio
async def test_rate_limit_uses_rate_limit_backoff():
    fn = AsyncMock(side_effect=[SearchRateLimitError("slow down"), "ok"])
    with patch("relevx.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        result = await retry_async(
            fn, max_retries=2, base_delay=1.0, max_delay=10.0,
            rate_limit_base_delay=2.0, rate_limit_max_delay=15.0,
        )
    assert result == "ok"
    sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_http_429_honours_retry_after():
    fn = AsyncMock(side_effect=[_status_error(429, {"retry-after": "5"}), "ok"])
    with patch("relevx.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        await retry_async(fn, max_retries=1, base_delay=1.0, rate_limit_max_delay=15.0)
    sleep.assert_awaited_once_with(5.0)


@pytest.mark.asyncio
async def test_backoff_is_exponential_and_capped():
    fn = AsyncMock(side_effect=[_status_error(503)] * 4 + ["ok"])
    with patch("relevx.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        await retry_async(fn, max_retries=4, base_delay=1.0, max_delay=5.0)
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 5.0]


def test_is_rate_limit_error():
    assert is_rate_limit_error(SearchRateLimitError("x"))
    assert is_rate_limit_error(_status_error(429))
    assert not is_rate_limit_error(_status_error(500))
    assert not is_rate_limit_error(ValueError("x"))
