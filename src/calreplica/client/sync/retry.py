"""Retry policy with exponential backoff and jitter.

This module provides:
- RetryPolicy: Backoff schedule, failure classification and attempt ceiling
- ErrorClass: Retryable or not
- retry_with_backoff: Run a call under a policy, sleeping between attempts
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

import httpx

from calreplica.client.api import APIError, NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.2

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    NetworkError,
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)


class ErrorClass(Enum):
    """Classification of a failed remote call."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff schedule shared by pulls and the queue processor.

    Attributes:
        initial_delay: Delay before the first retry, in seconds.
        multiplier: Growth factor per attempt.
        max_delay: Upper bound of the un-jittered delay.
        max_attempts: Retry ceiling; reaching it makes a failure terminal.
        jitter: Relative spread applied uniformly around the delay.
    """

    initial_delay: float = DEFAULT_INITIAL_BACKOFF
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_delay: float = DEFAULT_MAX_BACKOFF
    max_attempts: int = DEFAULT_MAX_RETRIES
    jitter: float = DEFAULT_JITTER
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay before retry number ``attempt`` (0-based)."""
        return min(self.max_delay, self.initial_delay * self.multiplier**attempt)

    def next_delay(self, attempt: int) -> float:
        """Jittered delay before retry number ``attempt`` (0-based)."""
        delay = self.base_delay(attempt)
        if self.jitter:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def classify(self, error: BaseException) -> ErrorClass:
        """Decide whether a failure may succeed if tried again."""
        if isinstance(error, NETWORK_EXCEPTIONS):
            return ErrorClass.RETRYABLE
        if isinstance(error, APIError) and error.status_code in RETRYABLE_STATUS_CODES:
            return ErrorClass.RETRYABLE
        return ErrorClass.NON_RETRYABLE

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error) is ErrorClass.RETRYABLE

    def should_give_up(self, retry_count: int) -> bool:
        """True once ``retry_count`` failed attempts reach the ceiling."""
        return retry_count >= self.max_attempts


def retry_with_backoff(
    func: Callable[[], T],
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute a function, retrying retryable failures with backoff.

    Args:
        func: Function to execute.
        policy: Backoff schedule and classification (defaults apply if None).
        sleep: Sleep function (injectable for tests).

    Returns:
        Result of the function.

    Raises:
        The last exception if it is not retryable or the ceiling is reached.
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        try:
            return func()
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            attempt += 1
            if policy.should_give_up(attempt):
                logger.error(f"All {policy.max_attempts} attempts failed: {e}")
                raise

            delay = policy.next_delay(attempt - 1)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            sleep(delay)
