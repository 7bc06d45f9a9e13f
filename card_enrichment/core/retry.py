"""Retry policies and helpers.

Two flavours of retry live here:

- RetryPolicy tables plus call_with_retry: a failed stage attempt is not
  slept on; the action is rescheduled through the durable scheduler with
  an incremented retry_count, and the table maps that count to a delay.
- retry_async / with_retry: short in-process exponential backoff for
  cheap idempotent calls such as blob downloads.

Both respect EnrichmentError.retryable.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import TYPE_CHECKING, Any, Generic, Optional, ParamSpec, TypeVar, Union

from card_enrichment.core.exceptions import ConfigurationError, EnrichmentError

if TYPE_CHECKING:
    from card_enrichment.core.scheduler import Scheduler

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Finite retry table: retry attempt index -> delay in milliseconds."""

    name: str
    delays_ms: tuple[int, ...]

    @property
    def max_retries(self) -> int:
        return len(self.delays_ms)

    def delay_for(self, retry_count: int) -> Optional[int]:
        """Delay before retry number `retry_count + 1`, or None when exhausted."""
        if 0 <= retry_count < len(self.delays_ms):
            return self.delays_ms[retry_count]
        return None


AI_METADATA_RETRY = RetryPolicy("ai_metadata", (5_000, 30_000, 120_000))
RENDERABLES_RETRY = RetryPolicy("renderables", (5_000, 15_000))
LINK_TIMEOUT_RETRY = RetryPolicy("link_timeout", (5_000, 5_000))
LINK_NETWORK_RETRY = RetryPolicy("link_network", (5_000,))

PolicySelector = Callable[[Exception], Optional[RetryPolicy]]


@dataclass
class RetryOutcome(Generic[T]):
    """Result of one attempt run through call_with_retry.

    Attributes:
        succeeded: The operation returned normally.
        value: The operation's return value when it succeeded.
        error: The exception raised by the attempt, if any.
        rescheduled: Another attempt was handed to the scheduler.
        delay_ms: Delay used for the rescheduled attempt.
    """

    succeeded: bool
    value: Optional[T] = None
    error: Optional[Exception] = None
    rescheduled: bool = False
    delay_ms: Optional[int] = None


def is_retryable(error: Exception) -> bool:
    """Whether another attempt could plausibly succeed."""
    if isinstance(error, EnrichmentError):
        return error.retryable
    if isinstance(error, ConfigurationError):
        return False
    return True


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: Union[RetryPolicy, PolicySelector],
    retry_count: int,
    scheduler: "Scheduler",
    action: str,
    args: dict[str, Any],
    log: Any = None,
) -> RetryOutcome[T]:
    """Run one attempt and reschedule the caller on retryable failure.

    Never raises for failures of `operation`; the outcome carries the error.

    Args:
        operation: Zero-argument coroutine function performing the attempt.
        policy: Retry table, or a callable choosing a table per exception
            (returning None for errors that must not be retried).
        retry_count: How many retries already happened before this attempt.
        scheduler: Durable scheduler used to enqueue the next attempt.
        action: Registered action name to reschedule.
        args: Arguments for the rescheduled action (retry_count is replaced).
        log: Logger or adapter to report on (defaults to module logger).

    Returns:
        RetryOutcome describing what happened.
    """
    log = log or logger
    try:
        value = await operation()
    except Exception as e:
        chosen = policy if isinstance(policy, RetryPolicy) else policy(e)
        delay = None
        if chosen is not None and is_retryable(e):
            delay = chosen.delay_for(retry_count)

        if delay is None:
            if chosen is not None and is_retryable(e):
                log.warning(
                    "Max retries exceeded for %s after %d retries: %s",
                    action,
                    retry_count,
                    e,
                )
            else:
                log.warning("Non-retryable failure in %s: %s", action, e)
            return RetryOutcome(succeeded=False, error=e)

        await scheduler.run_after(delay, action, {**args, "retry_count": retry_count + 1})
        log.info(
            "Attempt %d of %s failed, retrying in %dms: %s",
            retry_count + 1,
            action,
            delay,
            e,
        )
        return RetryOutcome(succeeded=False, error=e, rescheduled=True, delay_ms=delay)

    return RetryOutcome(succeeded=True, value=value)


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    **kwargs: P.kwargs,
) -> T:
    """Retry an async function with exponential backoff.

    Respects EnrichmentError.retryable - non-retryable errors are raised immediately.

    Args:
        func: Async function to call.
        *args: Positional arguments for func.
        max_attempts: Maximum number of attempts (default 3).
        base_delay: Initial delay between retries in seconds (default 1.0).
        max_delay: Maximum delay cap in seconds (default 60.0).
        jitter: Add random jitter to delays (default True).
        **kwargs: Keyword arguments for func.

    Returns:
        Result from successful func call.

    Raises:
        Exception: The last exception if all retries fail, or non-retryable error.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e):
                logger.debug(
                    "Non-retryable error on attempt %d/%d: %s",
                    attempt,
                    max_attempts,
                    e,
                )
                raise

            if attempt == max_attempts:
                logger.warning(
                    "All %d attempts failed for %s: %s",
                    max_attempts,
                    func.__name__,
                    e,
                )
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            if jitter:
                delay = delay * (0.5 + random.random())

            logger.info(
                "Attempt %d/%d failed for %s, retrying in %.2fs: %s",
                attempt,
                max_attempts,
                func.__name__,
                delay,
                e,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry logic error: no attempts made")


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator to add in-process retry logic to async functions.

    Example:
        @with_retry(max_attempts=3, base_delay=0.5)
        async def fetch_bytes(url: str) -> bytes:
            ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await retry_async(
                func,
                *args,
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=max_delay,
                jitter=jitter,
                **kwargs,
            )

        return wrapper

    return decorator
