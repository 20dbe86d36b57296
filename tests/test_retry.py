"""Tests for the retry policy and cancellation token."""

import pytest

from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import (
    CancelledError,
    ConnectivityError,
    ValidationError,
)
from shipctl.core.retry import RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy schedules."""

    def test_fixed_delays(self):
        policy = RetryPolicy.fixed(15, 4)
        assert list(policy.delays()) == [15, 15, 15]
        assert policy.total_delay == 45

    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy.exponential(1.0, 6, max_delay=5.0)
        assert list(policy.delays()) == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_single_attempt_has_no_delay(self):
        assert list(RetryPolicy.fixed(10, 1).delays()) == []

    def test_invalid_attempts(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)

    def test_invalid_factor(self):
        with pytest.raises(ValidationError):
            RetryPolicy(backoff_factor=0.5)


class TestRetryRun:
    """Tests for RetryPolicy.run."""

    def test_returns_first_success(self):
        sleeps: list[float] = []
        calls: list[int] = []

        def operation(attempt: int) -> str:
            calls.append(attempt)
            if attempt < 3:
                raise ConnectivityError("down")
            return "up"

        policy = RetryPolicy.exponential(1.0, 5)
        result = policy.run(operation, retry_on=(ConnectivityError,), sleep=sleeps.append)

        assert result == "up"
        assert calls == [1, 2, 3]
        assert sleeps == [1.0, 2.0]

    def test_exhausted_reraises_last_error(self):
        sleeps: list[float] = []

        def operation(attempt: int) -> None:
            raise ConnectivityError(f"attempt {attempt}")

        with pytest.raises(ConnectivityError, match="attempt 3"):
            RetryPolicy.fixed(2, 3).run(operation, retry_on=(ConnectivityError,), sleep=sleeps.append)
        assert sleeps == [2, 2]

    def test_other_errors_propagate_immediately(self):
        calls: list[int] = []

        def operation(attempt: int) -> None:
            calls.append(attempt)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            RetryPolicy.fixed(0, 5).run(operation, retry_on=(ConnectivityError,), sleep=lambda s: None)
        assert calls == [1]

    def test_on_retry_callback(self):
        seen: list[tuple[int, float]] = []

        def operation(attempt: int) -> int:
            if attempt == 1:
                raise ConnectivityError("down")
            return attempt

        RetryPolicy.fixed(3, 2).run(
            operation,
            retry_on=(ConnectivityError,),
            sleep=lambda s: None,
            on_retry=lambda attempt, error, delay: seen.append((attempt, delay)),
        )
        assert seen == [(1, 3)]

    def test_cancelled_before_first_attempt(self):
        token = CancellationToken()
        token.cancel("operator pressed stop")
        calls: list[int] = []

        with pytest.raises(CancelledError, match="operator pressed stop"):
            RetryPolicy.fixed(1, 3).run(calls.append, cancel=token, sleep=lambda s: None)
        assert calls == []

    def test_cancelled_between_attempts(self):
        token = CancellationToken()

        def operation(attempt: int) -> None:
            raise ConnectivityError("down")

        def sleep(delay: float) -> None:
            token.cancel()

        with pytest.raises(CancelledError):
            RetryPolicy.fixed(1, 5).run(operation, retry_on=(ConnectivityError,), sleep=sleep, cancel=token)


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initial_state(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_wait_returns_early_when_cancelled(self):
        token = CancellationToken()
        token.cancel()
        assert token.wait(10) is True
