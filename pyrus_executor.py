"""
Pyrus MCP - Resilient request executor
Bounded retry with exponential backoff for calls to the Pyrus API.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3  # 4 attempts in total
BASE_DELAY = 1.0  # seconds
MAX_DELAY = 10.0  # seconds

# Transport failures worth another attempt: resets, DNS/connect failures, deadlines
RETRYABLE_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def is_retryable(error: BaseException) -> bool:
    """Classify an error raised by an HTTP operation as retryable or terminal."""
    if isinstance(error, RETRYABLE_TRANSPORT_ERRORS):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429

    return False


def compute_backoff(attempt: int, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY) -> float:
    """
    Delay before the retry that follows a failed attempt.

    Args:
        attempt: Zero-based number of the attempt that just failed
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any single delay, in seconds

    Returns:
        Delay in seconds: min(base_delay * 2^attempt, max_delay)
    """
    return min(base_delay * (2 ** attempt), max_delay)


class ResilientExecutor:
    """
    Runs zero-argument async operations with bounded retries.

    The executor knows nothing about what an operation does. Non-idempotent
    operations (task creation, comments) are retried like any other, so a
    request that timed out after the server applied it can take effect twice.
    """

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
        max_delay: float = MAX_DELAY,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep or asyncio.sleep

    async def execute(self, operation: Callable[[], Awaitable[Any]], context: str = "request") -> Any:
        """
        Attempt the operation, retrying retryable failures with backoff.

        The last error is re-raised unchanged once it is terminal or the
        retries are used up.
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                start = time.monotonic()
                result = await operation()
                if attempt > 0:
                    duration_ms = int((time.monotonic() - start) * 1000)
                    logger.info(f"{context} succeeded after {attempt} retries ({duration_ms}ms)")
                return result
            except Exception as e:
                last_error = e

                if attempt == self.max_retries or not is_retryable(e):
                    break

                delay = compute_backoff(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    f"{context} failed, retrying in {int(delay * 1000)}ms "
                    f"(attempt {attempt + 1}/{self.max_retries}): {_describe_error(e)}"
                )
                await self._sleep(delay)

        logger.error(f"{context} failed: {_describe_error(last_error)}")
        raise last_error


def _describe_error(error: BaseException) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    return f"{type(error).__name__}: {error}"
