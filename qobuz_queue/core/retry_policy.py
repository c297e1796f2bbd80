"""
Classifies fetch failures and computes the backoff the driver applies
before a failed job becomes eligible again.
"""

import asyncio
import random
from enum import Enum

import aiohttp

from qobuz_queue.exceptions import FetchError
from qobuz_queue.utils.circuit_breaker import CircuitBreakerError

MAX_RETRY_DELAY = 30.0


class ErrorCategory(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    UNKNOWN = "unknown"


_RETRYABLE = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.SERVER,
        ErrorCategory.UNKNOWN,
    }
)


def _status_code(error: BaseException) -> int:
    if isinstance(error, FetchError) and error.status_code:
        return error.status_code
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status
    return 0


def categorize_error(error: BaseException) -> ErrorCategory:
    """Maps an exception to an `ErrorCategory` by status code, type, then message."""
    message = str(error).lower()
    status = _status_code(error)

    if status in (401, 403) or "auth" in message:
        return ErrorCategory.AUTH
    if status == 404 or "not found" in message:
        return ErrorCategory.NOT_FOUND
    if status == 429 or "rate limit" in message or "too many" in message:
        return ErrorCategory.RATE_LIMIT
    if status >= 500 or "server" in message:
        return ErrorCategory.SERVER
    if isinstance(
        error, (aiohttp.ClientConnectionError, asyncio.TimeoutError, CircuitBreakerError)
    ) or any(word in message for word in ("network", "timeout", "connection refused")):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def is_retryable(category: ErrorCategory) -> bool:
    """Auth and not-found failures will not fix themselves on a retry."""
    return category in _RETRYABLE


def retry_delay(retry_count: int, category: ErrorCategory, base: float = 1.0) -> float:
    """
    Seconds to hold a job back before its next attempt.

    Rate-limit failures back off by powers of three; everything else by
    powers of two with up to half a second of jitter, capped at 30 seconds.
    """
    if category is ErrorCategory.RATE_LIMIT:
        return base * (3**retry_count)
    delay = base * (2**retry_count) + random.uniform(0, 0.5)  # noqa: S311
    return min(delay, MAX_RETRY_DELAY)
