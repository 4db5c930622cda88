"""Bounded retry and polling primitives.

Every wait in ezdeploy (SSH connects, package manager locks, readiness
polls, apply attempts) is a bounded loop built on these two helpers, with
the sleep function injectable so tests never block.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from ezdeploy.lib.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy.

    Attributes:
        attempts: Maximum number of attempts (>= 1)
        delay: Seconds to wait after the first failed attempt
        backoff: Multiplier applied to the delay after each failure
        max_delay: Upper bound for the delay, if any
    """

    attempts: int
    delay: float = 0.0
    backoff: float = 1.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Return the wait after failed ``attempt`` (1-based)."""
        wait = self.delay * (self.backoff ** (attempt - 1))
        if self.max_delay is not None:
            wait = min(wait, self.max_delay)
        return wait

    @property
    def window(self) -> float:
        """Total time spent sleeping if every attempt fails."""
        return sum(self.delay_for(i) for i in range(1, self.attempts))


@dataclass
class PollOutcome:
    """Result of :func:`poll_until`."""

    satisfied: bool
    attempts: int
    last_value: object = None


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: SleepFn = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or the policy is exhausted.

    Args:
        fn: Zero-argument callable to invoke
        policy: Attempt/delay policy
        retry_on: Exception types that trigger a retry; others propagate
        on_retry: Called with (attempt, error) before sleeping
        sleep: Sleep function (injectable for tests)

    Returns:
        The first successful return value of ``fn``

    Raises:
        The last exception raised by ``fn`` once attempts are exhausted
    """
    for attempt in range(1, policy.attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.attempts:
                raise
            logger.debug(
                f"Attempt {attempt}/{policy.attempts} failed: {exc}; retrying"
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(policy.delay_for(attempt))
    # range() above always runs at least once and either returns or raises
    raise AssertionError("unreachable")


def poll_until(
    probe: Callable[[], T],
    predicate: Callable[[T], bool],
    policy: RetryPolicy,
    *,
    on_wait: Callable[[int, T], None] | None = None,
    sleep: SleepFn = time.sleep,
) -> PollOutcome:
    """Poll ``probe`` until ``predicate`` holds or attempts run out.

    Unlike :func:`retry_call`, a negative answer is a normal value here, not
    an exception. Exceptions raised by ``probe`` propagate.

    Args:
        probe: Zero-argument callable returning the observed value
        predicate: Returns True when the observed value is acceptable
        policy: Attempt/interval policy
        on_wait: Called with (attempt, value) before each sleep
        sleep: Sleep function (injectable for tests)

    Returns:
        PollOutcome with ``satisfied`` and the last observed value
    """
    value: T | None = None
    for attempt in range(1, policy.attempts + 1):
        value = probe()
        if predicate(value):
            return PollOutcome(satisfied=True, attempts=attempt, last_value=value)
        if attempt < policy.attempts:
            if on_wait is not None:
                on_wait(attempt, value)
            sleep(policy.delay_for(attempt))
    return PollOutcome(satisfied=False, attempts=policy.attempts, last_value=value)
