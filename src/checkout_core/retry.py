"""Bounded retry for async network operations.

Retries only what is worth retrying: timeouts, dropped connections and
5xx/408/429 responses. Configuration, layout and auth failures surface on the
first attempt. After the last attempt the original exception is re-raised
untouched.

Usage:
    from checkout_core.retry import execute

    body = await execute(lambda: fetch(url), policy=RetryPolicy(max_attempts=3))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from checkout_core.config import RetryPolicy
from checkout_core.exceptions import CheckoutError

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_POLICY = RetryPolicy()


def is_transient_status_code(status_code: int) -> bool:
    """Check if an HTTP status code indicates a transient/retryable error."""
    if status_code >= 500:
        return True
    return status_code in (408, 429)


def is_retryable_exception(exc: BaseException) -> bool:
    """Check if an exception raised by an acquisition step may be retried.

    Args:
        exc: The exception to check

    Returns:
        True for transient network conditions, False for everything else
    """
    if isinstance(exc, CheckoutError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return is_transient_status_code(exc.response.status_code)
    return isinstance(
        exc,
        (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.RemoteProtocolError,
            asyncio.TimeoutError,
        ),
    )


async def execute(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    max_attempts: int | None = None,
    retry_on: Callable[[BaseException], bool] = is_retryable_exception,
    on_retry: Callable[[int, BaseException], None] | None = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        policy: Attempt count and backoff; defaults to 3 attempts
        max_attempts: Overrides ``policy.max_attempts`` when given
        retry_on: Predicate deciding whether a failure is retried
        on_retry: Optional callback invoked with (attempt_number, exception)
            before sleeping
        description: Human-readable name used in log lines

    Returns:
        The result of the first successful attempt

    Raises:
        Exception: The last exception, unchanged, once attempts are exhausted
            or as soon as a non-retryable exception occurs
    """
    policy = policy or DEFAULT_POLICY
    attempts = max(1, max_attempts if max_attempts is not None else policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            retryable = retry_on(exc)
            logger.warning(
                "%s failed (attempt %d/%d): %s",
                description,
                attempt + 1,
                attempts,
                exc,
            )
            if not retryable or attempt >= attempts - 1:
                raise
            if on_retry:
                on_retry(attempt + 1, exc)
            sleep_time = policy.delay_for(attempt)
            logger.info("Waiting %.1f seconds before trying again", sleep_time)
            await asyncio.sleep(sleep_time)
    raise RuntimeError("unreachable")
