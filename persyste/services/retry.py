"""
RetryPolicy - Decides whether and when a failed call is re-issued.

Only transient failures are retried: NetworkError and 5xx ApiError.
4xx errors, timeouts and circuit rejections surface immediately.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from persyste.services.errors import ApiError, NetworkError, ServiceError
from persyste.services.result import Failure, Outcome

T = TypeVar("T")


def is_transient(error: ServiceError) -> bool:
    """Default retry condition: network errors or 5xx server errors."""
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, ApiError):
        return error.is_server_error
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one operation."""

    max_retries: int = 3  # Extra attempts after the first one
    retry_delay: float = 1.0  # Base delay in seconds
    exponential_backoff: bool = True
    retry_condition: Callable[[ServiceError], bool] = field(
        default=is_transient, compare=False
    )

    def should_retry(self, attempt: int, error: ServiceError) -> bool:
        """
        Check if another attempt is allowed.

        Args:
            attempt: Number of attempts that have failed so far (1-based)
            error: Classified error of the last attempt
        """
        return attempt <= self.max_retries and self.retry_condition(error)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (1-based)."""
        if self.exponential_backoff:
            return self.retry_delay * (2 ** (attempt - 1))
        return self.retry_delay

    def with_retries(self, max_retries: int) -> "RetryPolicy":
        return replace(self, max_retries=max_retries)


async def run_with_retry(
    operation: Callable[[], Awaitable[Outcome[T]]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Outcome[T]:
    """
    Run operation until it succeeds or the policy gives up.

    The last observed Failure is returned untouched when retries are exhausted.
    """
    attempt = 0
    while True:
        outcome = await operation()
        if not isinstance(outcome, Failure):
            return outcome

        attempt += 1
        error = outcome.error

        if not policy.should_retry(attempt, error):
            if attempt > policy.max_retries and policy.max_retries > 0:
                logger.error(
                    f"Max retries exceeded after {attempt} attempts: {error.message}"
                )
            elif attempt <= policy.max_retries:
                logger.info(
                    f"Retry condition not met, not retrying: "
                    f"{type(error).__name__}: {error.message}"
                )
            return outcome

        delay = policy.delay_for(attempt)
        logger.info(
            f"Retrying request (attempt {attempt}/{policy.max_retries}) "
            f"in {delay * 1000:.0f}ms after {type(error).__name__}: {error.message}"
        )
        await sleep(delay)
