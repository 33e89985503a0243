"""
Retry with exponential backoff for network-bound fleet operations.

Only failures classified as transient (network timeout or unreachable
remote) are retried. Authentication failures, safety-gate refusals and
local git errors propagate on the first attempt.

Example:
    >>> config = RetryConfig(max_retries=3, base_delay=0.5)
    >>> result, retries = call_with_retry(lambda: fetch(repo), config)
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

import httpx

from .errors import FlotillaError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts after the first call
        base_delay: Delay in seconds before the first retry
        multiplier: Exponential backoff multiplier
        jitter: Whether to add random variance to delays
        jitter_ratio: Variance ratio for jitter (0.2 = +/-20%)
        sleep: Function used to wait between attempts
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        multiplier: float = 2.0,
        jitter: bool = True,
        jitter_ratio: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.jitter_ratio = jitter_ratio
        self.sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-indexed): base * multiplier ** attempt."""
        delay = self.base_delay * (self.multiplier**attempt)
        if self.jitter:
            variance = delay * self.jitter_ratio
            delay += random.uniform(-variance, variance)
        return max(0.0, delay)


def is_retryable_error(exception: BaseException) -> bool:
    """True for transient failures: network timeouts, unreachable hosts, 5xx."""
    if isinstance(exception, FlotillaError):
        return exception.retryable
    if isinstance(exception, httpx.HTTPStatusError):
        return 500 <= exception.response.status_code < 600
    if isinstance(exception, (httpx.TimeoutException, httpx.TransportError)):
        return True
    return False


class RetryExhausted(Exception):
    """Raised by :func:`call_with_retry` carrying the attempts made."""

    def __init__(self, error: BaseException, retries: int):
        super().__init__(str(error))
        self.error = error
        self.retries = retries


def call_with_retry(
    func: Callable[[], T],
    config: RetryConfig,
    *,
    label: str = "",
) -> tuple[T, int]:
    """Call ``func`` until it succeeds, a non-retryable error occurs, or retries run out.

    Returns ``(result, retries_used)``. On failure raises :class:`RetryExhausted`
    wrapping the last error so callers can still report how many retries ran.
    """
    name = label or getattr(func, "__name__", repr(func))
    for attempt in range(config.max_retries + 1):
        try:
            return func(), attempt
        except Exception as e:
            if not is_retryable_error(e):
                logger.debug("%s: non-retryable error on attempt %d: %s", name, attempt + 1, e)
                raise RetryExhausted(e, attempt) from e
            if attempt >= config.max_retries:
                logger.warning("%s: max retries (%d) exceeded: %s", name, config.max_retries, e)
                raise RetryExhausted(e, attempt) from e
            delay = config.calculate_delay(attempt)
            logger.info(
                "%s: retry %d/%d after %.2fs due to: %s",
                name,
                attempt + 1,
                config.max_retries,
                delay,
                e,
            )
            config.sleep(delay)
    raise RuntimeError("retry loop completed without success or exception")


__all__ = [
    "RetryConfig",
    "RetryExhausted",
    "call_with_retry",
    "is_retryable_error",
]
