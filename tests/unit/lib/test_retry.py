"""Tests for the bounded retry and polling primitives."""

from __future__ import annotations

import pytest

from ezdeploy.lib.retry import RetryPolicy, poll_until, retry_call


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_constant_delay(self) -> None:
        policy = RetryPolicy(attempts=3, delay=5.0)
        assert [policy.delay_for(i) for i in (1, 2, 3)] == [5.0, 5.0, 5.0]

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy(attempts=5, delay=1.0, backoff=2.0, max_delay=3.0)
        assert [policy.delay_for(i) for i in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

    def test_window_counts_sleeps_between_attempts(self) -> None:
        """31 polls at 10 s sleep 30 times: a 300 s window."""
        assert RetryPolicy(attempts=31, delay=10.0).window == 300.0

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError, match="attempts"):
            RetryPolicy(attempts=0)


class TestRetryCall:
    """Tests for retry_call()."""

    def test_returns_first_success(self) -> None:
        calls = []
        sleeps: list[float] = []

        def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("refused")
            return "ok"

        value = retry_call(
            flaky, RetryPolicy(attempts=3, delay=5.0), sleep=sleeps.append
        )

        assert value == "ok"
        assert len(calls) == 3
        assert sleeps == [5.0, 5.0]

    def test_raises_last_error_when_exhausted(self) -> None:
        sleeps: list[float] = []

        def always_fails() -> None:
            raise ConnectionError("refused")

        with pytest.raises(ConnectionError):
            retry_call(
                always_fails, RetryPolicy(attempts=3, delay=1.0), sleep=sleeps.append
            )
        assert len(sleeps) == 2

    def test_non_retryable_errors_propagate_immediately(self) -> None:
        calls = []

        def broken() -> None:
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            retry_call(
                broken,
                RetryPolicy(attempts=5),
                retry_on=(ConnectionError,),
                sleep=lambda _: None,
            )
        assert len(calls) == 1

    def test_on_retry_receives_attempt_and_error(self) -> None:
        seen = []
        outcomes = iter([ValueError("a"), "done"])

        def fn() -> str:
            value = next(outcomes)
            if isinstance(value, Exception):
                raise value
            return value

        retry_call(
            fn,
            RetryPolicy(attempts=2),
            on_retry=lambda attempt, error: seen.append((attempt, str(error))),
            sleep=lambda _: None,
        )
        assert seen == [(1, "a")]


class TestPollUntil:
    """Tests for poll_until()."""

    def test_satisfied_on_later_attempt(self) -> None:
        values = iter([0, 1, 2])
        sleeps: list[float] = []

        outcome = poll_until(
            lambda: next(values),
            lambda v: v == 2,
            RetryPolicy(attempts=5, delay=5.0),
            sleep=sleeps.append,
        )

        assert outcome.satisfied
        assert outcome.attempts == 3
        assert outcome.last_value == 2
        assert sleeps == [5.0, 5.0]

    def test_not_satisfied_returns_last_value(self) -> None:
        waits = []

        outcome = poll_until(
            lambda: "pending",
            lambda v: v == "ready",
            RetryPolicy(attempts=3, delay=1.0),
            on_wait=lambda attempt, value: waits.append(attempt),
            sleep=lambda _: None,
        )

        assert not outcome.satisfied
        assert outcome.attempts == 3
        assert outcome.last_value == "pending"
        assert waits == [1, 2]

    def test_no_sleep_after_final_attempt(self) -> None:
        sleeps: list[float] = []
        poll_until(
            lambda: False, bool, RetryPolicy(attempts=1, delay=9.0), sleep=sleeps.append
        )
        assert sleeps == []
