"""Bounded retry around a single provider call.

Policy: a fixed number of attempts with a fixed delay between them. There
is no jitter and no exponential backoff. NotFound and validation errors
are terminal results, not failures, and pass through on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TypeVar

from .config import RetryPolicy
from .gateway import DesiredStateError, ResourceNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that end the call immediately without consuming another attempt
NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    ResourceNotFoundError,
    DesiredStateError,
)


async def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    description: str,
) -> T:
    """Run a blocking provider call in the executor, retrying on failure.

    Args:
        operation: Zero-argument callable issuing exactly one provider call.
        policy: Attempt budget and fixed delay.
        description: Human-readable name for logging.

    Returns:
        The operation's result from the first successful attempt.

    Raises:
        ResourceNotFoundError: Passed through unchanged, never retried.
        DesiredStateError: Passed through unchanged, never retried.
        Exception: The last attempt's error once all attempts are used.
    """
    loop = asyncio.get_running_loop()
    last_error: Exception | None = None

    for attempt in range(1, policy.attempts + 1):
        try:
            return await loop.run_in_executor(None, operation)
        except NON_RETRYABLE_ERRORS:
            raise
        except Exception as e:
            last_error = e

            if attempt < policy.attempts:
                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "operation": description,
                        "attempt": attempt,
                        "max_attempts": policy.attempts,
                        "wait_seconds": policy.delay_seconds,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(policy.delay_seconds)

    logger.error(
        "Provider call failed after all attempts",
        extra={
            "operation": description,
            "max_attempts": policy.attempts,
            "error": str(last_error),
        },
    )
    # SAFETY: attempts >= 1 is enforced by Config, so the loop ran at least once
    assert last_error is not None, "Retry loop completed without setting last_error"
    raise last_error
