"""Exponential-backoff retry for Whoop HTTP calls.

Delay before attempt ``n + 1`` is ``initial * multiplier ** (n - 1)`` capped at
``max_delay``: 1s, 2s, 4s, ... 8s with the default policy.  Only rate limits,
5xx responses and transport failures are retried; every other error
propagates on the first attempt.

The loop is explicit and ``sleep`` is injectable so tests run without real
delays::

    result = await fetch_with_retry(lambda: client.get(url), sleep=fake_sleep)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

import httpx

from src.wearables.config_loader import RetryConfig, get_sync_config
from src.wearables.errors import WhoopAPIError

logger = logging.getLogger("prime.wearables.retry")

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class RetryResult(Generic[T]):
    """Value returned by a successful call plus how hard it was to get."""

    data: T
    attempts: int
    total_delay: float


def backoff_delay(attempt: int, policy: RetryConfig) -> float:
    """Seconds to wait after failed ``attempt`` (1-based)."""
    delay = policy.initial_delay_s * policy.backoff_multiplier ** (attempt - 1)
    return min(delay, policy.max_delay_s)


def is_retryable(exc: BaseException, policy: RetryConfig) -> bool:
    if isinstance(exc, WhoopAPIError):
        return exc.status_code in policy.retryable_status_codes
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in policy.retryable_status_codes
    return isinstance(exc, httpx.TransportError)


async def fetch_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryConfig | None = None,
    sleep: SleepFn = asyncio.sleep,
    label: str = "whoop request",
) -> RetryResult[T]:
    """Run ``operation`` until it succeeds or the retry budget is spent.

    Args:
        operation: Zero-arg coroutine factory; called once per attempt.
        policy:    Backoff policy.  Defaults to ``retry`` in sync_config.yaml.
        sleep:     Coroutine used to wait between attempts.
        label:     Short description for log lines.

    Returns:
        RetryResult carrying the operation's value.

    Raises:
        The last exception once ``max_attempts`` is reached, or the first
        non-retryable exception immediately.
    """
    policy = policy or get_sync_config().retry
    total_delay = 0.0
    attempt = 0

    while True:
        attempt += 1
        try:
            data = await operation()
        except Exception as exc:
            if not is_retryable(exc, policy):
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %d attempt(s): %s", label, attempt, exc
                )
                raise
            delay = backoff_delay(attempt, policy)
            logger.info(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                label, attempt, policy.max_attempts, exc, delay,
            )
            total_delay += delay
            await sleep(delay)
            continue

        if attempt > 1:
            logger.info("%s succeeded on attempt %d", label, attempt)
        return RetryResult(data=data, attempts=attempt, total_delay=total_delay)
