"""Tests for the retry policy."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import httpx
import pytest

from calreplica.client.api import (
    AuthenticationError,
    BadRequestError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from calreplica.client.sync.retry import ErrorClass, RetryPolicy, retry_with_backoff


class TestRetryPolicy:
    """Tests for backoff schedule and classification."""

    def test_exponential_schedule(self) -> None:
        """1s, 2s, 4s, 8s... capped at the maximum."""
        policy = RetryPolicy(jitter=0.0)
        assert [policy.next_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]
        assert policy.next_delay(20) == 60.0

    def test_jitter_stays_within_bounds(self) -> None:
        policy = RetryPolicy(jitter=0.2, rng=random.Random(7))
        for attempt in range(6):
            base = policy.base_delay(attempt)
            delay = policy.next_delay(attempt)
            assert base * 0.8 <= delay <= base * 1.2

    @pytest.mark.parametrize(
        "error",
        [
            RateLimitedError("slow down", 429),
            ServerError("unavailable", 503),
            ServerError("bad gateway", 502),
            NetworkError("offline"),
            httpx.ConnectError("refused"),
            TimeoutError(),
        ],
    )
    def test_retryable(self, error: Exception) -> None:
        assert RetryPolicy().classify(error) is ErrorClass.RETRYABLE

    @pytest.mark.parametrize(
        "error",
        [
            BadRequestError("invalid", 400),
            AuthenticationError("expired", 401),
            NotFoundError("missing", 404),
            ValueError("bug"),
        ],
    )
    def test_not_retryable(self, error: Exception) -> None:
        assert RetryPolicy().classify(error) is ErrorClass.NON_RETRYABLE

    def test_ceiling(self) -> None:
        policy = RetryPolicy(max_attempts=5)
        assert not policy.should_give_up(4)
        assert policy.should_give_up(5)


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_returns_first_success(self) -> None:
        sleep = MagicMock()
        assert retry_with_backoff(lambda: 42, sleep=sleep) == 42
        sleep.assert_not_called()

    def test_retries_then_succeeds(self) -> None:
        """Should sleep along the schedule between attempts."""
        func = MagicMock(side_effect=[ServerError("x", 503), ServerError("x", 503), "ok"])
        sleep = MagicMock()

        result = retry_with_backoff(func, RetryPolicy(jitter=0.0), sleep=sleep)

        assert result == "ok"
        assert func.call_count == 3
        assert [call.args[0] for call in sleep.call_args_list] == [1.0, 2.0]

    def test_non_retryable_raises_immediately(self) -> None:
        func = MagicMock(side_effect=NotFoundError("gone", 404))
        sleep = MagicMock()

        with pytest.raises(NotFoundError):
            retry_with_backoff(func, sleep=sleep)

        assert func.call_count == 1
        sleep.assert_not_called()

    def test_gives_up_at_ceiling(self) -> None:
        """Should stop after max_attempts and re-raise the last error."""
        func = MagicMock(side_effect=NetworkError("offline"))
        sleep = MagicMock()

        with pytest.raises(NetworkError):
            retry_with_backoff(func, RetryPolicy(max_attempts=3, jitter=0.0), sleep=sleep)

        assert func.call_count == 3
        assert sleep.call_count == 2
