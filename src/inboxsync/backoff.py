"""
Exponential backoff.

One policy drives both websocket reconnection and retries of REST calls.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Iterator, Optional, TypeVar

import httpx

from inboxsync.exceptions import (
    AuthError,
    NonRetryableApiError,
    RetryableApiError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BackoffPolicy:
    """Configuration for backoff behavior.

    ``delay_for(attempt)`` is ``base_delay * 2 ** (attempt - 1)`` capped at
    ``max_delay``; attempts are 1-indexed.
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5
    exponential_base: float = 2.0
    jitter: bool = False
    retryable_status_codes: set[int] = field(
        default_factory=lambda: {408, 429, 500, 502, 503, 504}
    )

    def delay_for(self, attempt: int) -> float:
        """
        Calculate delay before the given attempt.

        Args:
            attempt: Attempt number (1-indexed)

        Returns:
            Delay in seconds
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Up to 25% extra, never past the cap
            delay = min(delay + delay * 0.25 * random.random(), self.max_delay)

        return delay

    def delays(self) -> Iterator[float]:
        """Yield the delay for every allowed attempt, in order."""
        for attempt in range(1, self.max_attempts + 1):
            yield self.delay_for(attempt)

    def exhausted(self, attempt: int) -> bool:
        """Whether ``attempt`` exceeds the allowed number of attempts."""
        return attempt > self.max_attempts


def with_async_retry(
    policy: Optional[BackoffPolicy] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator for adding retry logic to async REST calls.

    Retries on ``RetryableApiError`` and ``httpx.RequestError``; auth and
    non-retryable errors propagate immediately.

    ``policy.max_attempts`` counts retries after the first call, so the
    wrapped function runs at most ``max_attempts + 1`` times.

    Args:
        policy: Backoff policy (uses defaults if not provided)

    Returns:
        Decorated async function with retry logic
    """
    if policy is None:
        policy = BackoffPolicy(base_delay=0.5, max_attempts=3, jitter=True)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except (AuthError, NonRetryableApiError):
                    raise
                except (RetryableApiError, httpx.RequestError) as e:
                    attempt += 1
                    if policy.exhausted(attempt):
                        logger.error(
                            f"Max retries ({policy.max_attempts}) exceeded for {func.__name__}: {e}"
                        )
                        if isinstance(e, httpx.RequestError):
                            raise RetryableApiError(f"Network error: {e}") from e
                        raise
                    delay = policy.delay_for(attempt)
                    logger.warning(
                        f"Retry {attempt}/{policy.max_attempts} for {func.__name__}: "
                        f"{e}, waiting {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def check_response(response: httpx.Response, policy: BackoffPolicy) -> None:
    """
    Check HTTP response and raise the appropriate error.

    Raises:
        AuthError: On 401/403
        RetryableApiError: If the error should be retried
        NonRetryableApiError: If the error should not be retried
    """
    if response.is_success:
        return

    status_code = response.status_code
    message = f"HTTP {status_code}: {response.text[:200]}"

    if status_code in (401, 403):
        raise AuthError(message, status_code=status_code)
    if status_code in policy.retryable_status_codes:
        raise RetryableApiError(message, status_code=status_code)
    raise NonRetryableApiError(message, status_code=status_code)
