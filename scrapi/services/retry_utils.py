"""
Retry Utilities for the job runner.

Executes an async operation under a RetryPolicy: a bounded number of attempts,
a fixed delay between them and a timeout on every single attempt.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
import structlog

from scrapi.core.exceptions import ConnectivityError, RetryExhaustedError, ScrapiError
from scrapi.core.models import RetryPolicy

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]

# Exceptions that should trigger a retry
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.PoolTimeout,
)

# HTTP status codes that warrant a retry
STATUS_REQUEST_TIMEOUT = 408
STATUS_TOO_MANY_REQUESTS = 429
STATUS_INTERNAL_SERVER_ERROR = 500
STATUS_BAD_GATEWAY = 502
STATUS_SERVICE_UNAVAILABLE = 503
STATUS_GATEWAY_TIMEOUT = 504

RETRYABLE_STATUS_CODES = {
    STATUS_REQUEST_TIMEOUT,
    STATUS_TOO_MANY_REQUESTS,
    STATUS_INTERNAL_SERVER_ERROR,
    STATUS_BAD_GATEWAY,
    STATUS_SERVICE_UNAVAILABLE,
    STATUS_GATEWAY_TIMEOUT,
}


def is_retryable(error: BaseException) -> bool:
    """Domain errors carry their own flag; raw httpx transport errors always retry."""
    if isinstance(error, ScrapiError):
        return error.retryable
    return isinstance(error, RETRYABLE_EXCEPTIONS)


async def with_retries(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """
    Execute an async function under a retry policy.

    Args:
        func: Async function to call
        *args: Positional arguments for func
        policy: Attempts, delay between attempts and per-attempt timeout
        sleep: Awaitable used for the delay (injectable for tests)
        **kwargs: Keyword arguments for func

    Returns:
        Result from the first successful call

    Raises:
        The first non-retryable exception unchanged, or RetryExhaustedError
        once every attempt ended in a retryable error.
    """
    name = getattr(func, "__name__", repr(func))
    log = logger.bind(func=name, max_attempts=policy.max_attempts)

    last_exception: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=policy.timeout)
        except TimeoutError:
            last_exception = ConnectivityError(
                f"{name} timed out after {policy.timeout:g}s",
                {"attempt": attempt},
            )
        except Exception as e:
            if not is_retryable(e):
                raise
            last_exception = e

        if attempt < policy.max_attempts:
            log.debug(
                "Retrying",
                error=str(last_exception),
                attempt=attempt,
                delay=policy.delay,
            )
            await sleep(policy.delay)

    log.warning(
        "All retry attempts failed",
        error=str(last_exception),
        attempts=policy.max_attempts,
    )
    raise RetryExhaustedError(policy.max_attempts, last_exception)
