"""Exponential backoff for store round trips."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from upwatch.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Whether a store error looks like a dropped connection or a timeout."""
    if isinstance(error, OperationalError):
        return True
    if isinstance(error, DBAPIError):
        return error.connection_invalidated
    return isinstance(error, (OSError, ConnectionError, TimeoutError))


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for store operations.

    Attributes:
        attempts: Total number of tries, including the first one
        delay: Seconds to wait before the second try
        multiplier: Factor applied to the delay after every failed try
    """

    attempts: int = 3
    delay: float = 0.5
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.attempts <= 0:
            raise ValueError("attempts must be positive")
        if self.delay < 0:
            raise ValueError("delay must not be negative")


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    policy: RetryPolicy | None = None,
) -> T:
    """Run a store operation, retrying transient failures with exponential backoff.

    Other errors, such as constraint violations, propagate on the first attempt.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        description: Operation name used in logs and in the raised error.
        policy: Backoff settings. Uses defaults if not provided.

    Returns:
        Whatever the operation returns.

    Raises:
        StoreUnavailableError: All attempts failed with transient errors.
    """
    policy = policy or RetryPolicy()
    retry_delay = policy.delay
    last_exception: Exception | None = None

    for attempt in range(policy.attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_transient(e):
                raise
            last_exception = e
            if attempt < policy.attempts - 1:
                logger.warning(
                    f"Store operation {description} failed (attempt {attempt + 1}/"
                    f"{policy.attempts}): {e}. Retrying in {retry_delay}s..."
                )
                await asyncio.sleep(retry_delay)
                retry_delay *= policy.multiplier
            else:
                logger.error(
                    f"All {policy.attempts} attempts failed for store operation {description}: {e}"
                )

    raise StoreUnavailableError(description, cause=last_exception)
