"""Retry utilities with exponential backoff for external provider calls.

Billing provider reads are idempotent and get one bounded retry; provider
mutations (subscription create/cancel) must never be retried blindly, so
they run with ``max_attempts=1``. Every attempt is bounded by a timeout.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from practicegate.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        initial_delay: Initial delay in seconds before the first retry.
        max_delay: Maximum delay between retries.
        jitter_max: Maximum jitter in seconds added to delays.
        timeout: Per-attempt timeout in seconds (None disables it).
        retry_exceptions: Exception types that trigger retries.
    """

    max_attempts: int = 2
    initial_delay: float = 0.5
    max_delay: float = 2.0
    jitter_max: float = 0.25
    timeout: float | None = 10.0
    retry_exceptions: tuple[type[BaseException], ...] = (Exception,)


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    operation: str,
) -> T:
    """Await ``func()`` under ``config``, re-raising the last failure.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        config: Retry and timeout policy.
        operation: Name used in log events.

    Returns:
        The first successful result.
    """

    async def _attempt() -> T:
        if config.timeout is None:
            return await func()
        return await asyncio.wait_for(func(), timeout=config.timeout)

    attempt_number = 0
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(config.max_attempts),
            wait=wait_exponential_jitter(
                initial=config.initial_delay,
                max=config.max_delay,
                jitter=config.jitter_max,
            ),
            retry=retry_if_exception_type(config.retry_exceptions),
            reraise=True,
        ):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.warning(
                        "retry_attempt",
                        operation=operation,
                        attempt=attempt_number,
                        max_attempts=config.max_attempts,
                    )
                return await _attempt()
    except config.retry_exceptions as e:
        logger.error(
            "retry_exhausted",
            operation=operation,
            attempts=attempt_number,
            last_exception=repr(e),
        )
        raise

    raise RuntimeError("Retry loop exited unexpectedly")
