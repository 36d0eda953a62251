"""Bounded retry with a fixed delay between attempts.

Renewal charges are retried at most ``max_attempts`` times in total, with a
constant pause between attempts, and only for errors the caller classifies as
retryable. Anything else propagates on the first attempt.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from plansync.core.exceptions import TransientError
from plansync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts, including the first one.
        delay: Seconds to wait between attempts.
        retry_exceptions: Exception types that trigger another attempt.
    """

    max_attempts: int = 2
    delay: float = 1.0
    retry_exceptions: tuple[type[BaseException], ...] = (TransientError,)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    operation: str,
    **log_context: object,
) -> T:
    """Call ``func`` until it succeeds or the attempt budget is spent.

    The last exception is re-raised unchanged once attempts are exhausted.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        config: Retry policy.
        operation: Name used in log events.
        **log_context: Extra keyword context for log events.

    Returns:
        The value returned by the first successful attempt.
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "retry_scheduled",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=config.max_attempts,
            error=str(outcome.exception()) if outcome is not None else None,
            **log_context,
        )

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_fixed(config.delay),
        retry=retry_if_exception_type(config.retry_exceptions),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await func()

    # AsyncRetrying with reraise=True either returns or raises
    raise RuntimeError("Retry loop exited unexpectedly")

