"""Retry utilities for kubestrap.

Every retry loop is bounded twice: by attempt count and by total elapsed time.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from kubestrap.core.exceptions import ProviderError, RemoteExecError
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff settings."""

    max_attempts: int = 5
    min_wait: float = 1.0
    max_wait: float = 20.0
    max_elapsed: float = 300.0

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        return RetryPolicy(max_attempts, self.min_wait, self.max_wait, self.max_elapsed)


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying locally."""
    if isinstance(error, (ProviderError, RemoteExecError)):
        return error.is_transient
    return False


def _before_sleep(operation: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        """Log before sleeping between retries."""
        if retry_state.outcome and retry_state.outcome.failed:
            exception = retry_state.outcome.exception()
            logger.warning(
                "retry_attempt",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=max_attempts,
                exception=type(exception).__name__,
                message=str(exception),
            )

    return before_sleep


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = is_transient,
    operation: str = "call",
    **kwargs: Any,
) -> T:
    """Await ``func`` and retry it while ``should_retry`` accepts the error.

    Args:
        func: Coroutine function to call
        policy: Backoff and bounds
        should_retry: Predicate selecting retryable errors
        operation: Operation name for log lines

    Returns:
        Whatever ``func`` returns

    Raises:
        The last error once the policy is exhausted, or the first
        non-retryable error immediately.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception(should_retry),
        stop=stop_after_attempt(policy.max_attempts) | stop_after_delay(policy.max_elapsed),
        wait=wait_exponential(multiplier=1, min=policy.min_wait, max=policy.max_wait),
        before_sleep=_before_sleep(operation, policy.max_attempts),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await func(*args, **kwargs)
    raise AssertionError("unreachable")  # pragma: no cover
