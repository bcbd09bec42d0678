"""Retry with exponential backoff for transient LLM/network failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "network",
    "econnrefused",
    "etimedout",
    "econnreset",
    "connection reset",
    "connection refused",
    "rate limit",
    "too many requests",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
)

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


def is_retryable_error(error: BaseException) -> bool:
    """Return True when ``error`` looks transient (timeout, network, rate limit, 5xx gateway)."""
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    status = getattr(error, "status", None)
    if isinstance(status, int) and status in RETRYABLE_STATUSES:
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


@dataclass
class RetryOptions:
    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_multiplier: float = 2.0
    on_retry: Callable[[int, BaseException], None] | None = None


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying transient failures with exponential backoff.

    Permanent failures and the failure of the last attempt propagate unchanged.
    ``on_retry(attempt, error)`` is called before each retry, ``attempt`` counting from 1.
    """
    opts = options or RetryOptions()
    delay_ms = opts.initial_delay_ms
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as error:
            if attempt >= opts.max_retries or not is_retryable_error(error):
                raise
            attempt += 1
            if opts.on_retry is not None:
                opts.on_retry(attempt, error)
            await sleep(delay_ms / 1000)
            delay_ms = min(delay_ms * opts.backoff_multiplier, opts.max_delay_ms)


def log_error(component: str, error: BaseException, **context: Any) -> None:
    """Log ``error`` with a component prefix and ``key=value`` context."""
    details = " ".join(f"{key}={value!r}" for key, value in context.items())
    logger.error(
        "[%s] %s%s",
        component,
        error,
        f" ({details})" if details else "",
        exc_info=(type(error), error, error.__traceback__),
    )


__all__ = [
    "RETRYABLE_PATTERNS",
    "RetryOptions",
    "is_retryable_error",
    "log_error",
    "retry_with_backoff",
]
