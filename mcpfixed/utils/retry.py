# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/utils/retry.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Bounded retries with exponential backoff for retryable failures.

Only errors whose ``retryable`` flag is set (network failures, timeouts,
transient upstream errors) are retried. Everything else, including
cancellation, propagates immediately.

Examples:
    >>> from mcpfixed.errors import NetworkError, NotFoundError
    >>> is_retryable(NetworkError("down"))
    True
    >>> is_retryable(NotFoundError("gone"))
    False
    >>> is_retryable(ValueError("boom"))
    False
"""

# Standard
import asyncio
import logging
from typing import Awaitable, Callable, Tuple, TypeVar

# Third-Party
from tenacity import AsyncRetrying, retry_if_exception, RetryCallState, stop_after_attempt, wait_exponential

# First-Party
from mcpfixed.config import settings
from mcpfixed.errors import FixedToolError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Whether a failure may be retried.

    Args:
        error: Raised exception.

    Returns:
        bool: True for errors flagged ``retryable``.
    """
    return isinstance(error, FixedToolError) and error.retryable


async def _sleep(seconds: float) -> None:
    """Backoff sleep.

    Args:
        seconds: Delay.
    """
    await asyncio.sleep(seconds)


async def retry_async(operation: Callable[[], Awaitable[T]], max_retries: int, description: str = "operation") -> Tuple[T, int]:
    """Run an async operation, retrying retryable failures.

    The delay doubles from ``retry_backoff_base`` and is capped at
    ``retry_backoff_max``.

    Args:
        operation: Zero-argument coroutine factory.
        max_retries: Retries after the first attempt.
        description: Label for log messages.

    Returns:
        Tuple[T, int]: Result and number of attempts made.

    Raises:
        FixedToolError: The last error once retries are exhausted, or the first
            non-retryable error.
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(f"{description} failed ({getattr(error, 'error_type', type(error).__name__)}), retrying in {delay:.2f}s ({retry_state.attempt_number}/{max_retries})")

    retrying = AsyncRetrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=settings.retry_backoff_base, max=settings.retry_backoff_max),
        before_sleep=_log_retry,
        sleep=_sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation()
            attempts = attempt.retry_state.attempt_number
    return result, attempts
