"""
Retry and Rate Limiting
=======================

Backoff policy shared by the Sentinel and the Extractor: exponential
backoff with full jitter, with a longer base delay when the upstream
signalled throttling (HTTP 429 or ``LLMRateLimitError``).

Version: 0.1.0
"""

import asyncio
import random
import time
from collections.abc import Callable

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from shared.config import settings
from shared.llm import LLMRateLimitError
from shared.logging import get_logger


logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def is_rate_limited(error: BaseException | None) -> bool:
    if isinstance(error, LLMRateLimitError):
        return True
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429


def is_transient_http(error: BaseException) -> bool:
    """Network failures and retryable status codes."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUSES
    return isinstance(error, httpx.TransportError)


def _retry_after(error: BaseException | None) -> float | None:
    if isinstance(error, LLMRateLimitError):
        return error.retry_after
    if isinstance(error, httpx.HTTPStatusError):
        header = error.response.headers.get("retry-after")
        try:
            return float(header) if header else None
        except ValueError:
            return None
    return None


class wait_full_jitter(wait_base):
    """
    ``uniform(0, min(cap, base * 2**(attempt-1)))`` where ``base`` is the
    rate-limit base after a throttling error. A ``Retry-After`` hint is
    honoured as a floor.
    """

    def __init__(
        self,
        base: float | None = None,
        rate_limit_base: float | None = None,
        cap: float | None = None,
    ) -> None:
        self.base = base if base is not None else settings.pipeline.retry_base_delay_seconds
        self.rate_limit_base = (
            rate_limit_base
            if rate_limit_base is not None
            else settings.pipeline.rate_limit_base_delay_seconds
        )
        self.cap = cap if cap is not None else settings.pipeline.retry_max_delay_seconds

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        base = self.rate_limit_base if is_rate_limited(error) else self.base
        ceiling = min(self.cap, base * 2 ** (retry_state.attempt_number - 1))
        delay = random.uniform(0, ceiling)
        hint = _retry_after(error)
        if hint is not None:
            delay = max(delay, min(hint, self.cap))
        return delay


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retrying",
        attempt=retry_state.attempt_number,
        error=str(error),
        error_type=type(error).__name__,
        rate_limited=is_rate_limited(error),
        sleep=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
    )


def retrying(
    attempts: int,
    retry_on: Callable[[BaseException], bool],
    wait: wait_base | None = None,
) -> AsyncRetrying:
    """
    Build an ``AsyncRetrying`` loop with the pipeline backoff policy.

    Usage:
        async for attempt in retrying(3, is_transient_http):
            with attempt:
                response = await client.get(url)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait or wait_full_jitter(),
        retry=retry_if_exception(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


class RateLimiter:
    """Enforces a minimum interval between consecutive calls."""

    def __init__(self, min_interval_seconds: float) -> None:
        self.min_interval = min_interval_seconds
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                remaining = self.min_interval - (time.monotonic() - self._last)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last = time.monotonic()
