"""Retry and error recovery.

Exponential backoff with a ceiling, Retry-After support, an optional hard
timeout per attempt, and classification of which failures are worth another
attempt. Only transport, rate-limit and timeout failures are retried;
everything else crosses unchanged on the first failure.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from conduit.errors import (
    ProviderError,
    RequestCancelledError,
    RequestTimeoutError,
    RetryableError,
    parse_retry_after,
)

if TYPE_CHECKING:
    from conduit.providers.base import AbortSignal

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnRetry = Callable[[int, BaseException, float], None]

_RETRYABLE_TRANSPORT = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    httpx.TimeoutException,
    ConnectionError,
    TimeoutError,
    socket.gaierror,
)

_RETRYABLE_ERROR_TYPES = frozenset({"overloaded_error", "rate_limit_error", "api_error"})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. Delays and timeout are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    timeout: float | None = 30.0

    def with_overrides(self, **overrides: Any) -> RetryPolicy:
        return dataclasses.replace(self, **overrides)


DEFAULT_RETRY_POLICY = RetryPolicy()


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay after failed attempt number `attempt` (1-based), clamped to max_delay."""
    return min(
        policy.initial_delay * policy.backoff_multiplier ** (attempt - 1),
        policy.max_delay,
    )


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, ProviderError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient (retry) or permanent (re-raise)."""
    if isinstance(error, RequestCancelledError):
        return False
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, _RETRYABLE_TRANSPORT):
        return True

    status = _status_of(error)
    if status is not None and (status == 429 or 500 <= status < 600):
        return True

    if isinstance(error, ProviderError) and error.error_type in _RETRYABLE_ERROR_TYPES:
        return True

    return False


def get_retry_after(error: BaseException) -> float | None:
    """Vendor-supplied wait (seconds), if the error carries one."""
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        return float(retry_after)
    if isinstance(error, httpx.HTTPStatusError):
        return parse_retry_after(error.response.headers.get("retry-after"))
    return None


def is_rate_limit_error(error: BaseException) -> bool:
    if _status_of(error) == 429:
        return True
    return isinstance(error, ProviderError) and error.error_type == "rate_limit_error"


def is_timeout_error(error: BaseException) -> bool:
    return isinstance(error, (RequestTimeoutError, httpx.TimeoutException, TimeoutError))


def format_error_message(error: BaseException) -> str:
    """One-line description suitable for showing to the user."""
    if isinstance(error, RequestTimeoutError):
        return str(error)
    if isinstance(error, RequestCancelledError):
        return "Request cancelled"
    if isinstance(error, ProviderError):
        if error.status_code == 429:
            return "Rate limit exceeded. Please wait before retrying."
        return f"API Error: {error.vendor_message}"
    if isinstance(error, (httpx.ConnectError, ConnectionError, socket.gaierror)):
        return f"Network error: {error}"
    return str(error) or type(error).__name__


async def _sleep(delay: float, abort_signal: AbortSignal | None) -> None:
    if abort_signal is None:
        await asyncio.sleep(delay)
        return
    if abort_signal.aborted:
        raise RequestCancelledError()
    try:
        await asyncio.wait_for(abort_signal.wait(), timeout=delay)
    except TimeoutError:
        return
    raise RequestCancelledError()


async def _attempt(fn: Callable[[], Awaitable[T]], timeout: float | None) -> T:
    if timeout is None:
        return await fn()
    cm = asyncio.timeout(timeout)
    try:
        async with cm:
            return await fn()
    except TimeoutError as e:
        if not cm.expired():
            raise
        raise RequestTimeoutError(
            f"Operation timed out after {timeout:g}s", timeout=timeout
        ) from e


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    on_retry: OnRetry | None = None,
    abort_signal: AbortSignal | None = None,
) -> T:
    """Run `fn` with bounded retry and exponential backoff.

    Non-retryable errors are re-raised on the attempt they occur. When every
    attempt fails, the last error is re-raised.
    """
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await _attempt(fn, policy.timeout)
        except Exception as e:
            last_error = e
            if not is_retryable_error(e):
                raise
            if attempt == policy.max_attempts:
                break

            delay = get_retry_after(e)
            if delay is None:
                delay = backoff_delay(policy, attempt)

            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt,
                policy.max_attempts,
                type(e).__name__,
                delay,
            )
            if on_retry:
                on_retry(attempt, e, delay)
            await _sleep(delay, abort_signal)

    if last_error is None:
        raise ValueError(f"max_attempts must be >= 1, got {policy.max_attempts}")
    raise last_error
