"""Retry policy and the outer retry loop.

WHY
───
Backoff used to be decided at each call site with its own constants.
Here a single policy (decorrelated jitter) computes delays, and a single
loop (``RetryLoop``) consumes ``Ok | Retry | Fatal`` outcomes produced by
one attempt at a time. The attempt says what happened; the loop decides
whether and how long to wait.

ARCHITECTURE
────────────
::

    RetryStrategy (ABC)
      └── DecorrelatedJitterBackoff  ─ min(cap, uniform(base, previous * 3))

    RetryLoop(max_attempts, sleep)
      └── .run(step)   step(attempt) -> Ok | Retry(wait_for) | Fatal

    classify_failure(error, strategy, attempt, previous) -> Retry | Fatal

Related modules:
    job_store.py   — uses the strategy to schedule the next job attempt
    rate_limit.py  — computes waits for throttled calls
    ingestion/sources.py — drives per-batch fetches through RetryLoop

Tags:
    syncspine, execution, retry, backoff, jitter

Doc-Types:
    api-reference
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from syncspine.core.errors import get_retry_after, is_retryable
from syncspine.core.result import Err, Fatal, Ok, Outcome, Result, Retry

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int, previous: float | None = None) -> float:
        """Seconds to wait before the attempt after ``attempt``.

        Args:
            attempt: One-based number of the attempt that just failed
            previous: Delay used before that attempt, if any
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether another attempt is allowed after ``attempt`` failed."""
        ...


@dataclass
class DecorrelatedJitterBackoff(RetryStrategy):
    """Decorrelated-jitter exponential backoff.

    ``delay = min(max_delay, uniform(base_delay, previous * 3))`` where
    ``previous`` starts at ``base_delay``. Spreads retries of many failing
    jobs without the lock-step bursts of plain exponential backoff.

    Attributes:
        max_attempts: Total attempts allowed (first try included)
        base_delay: Minimum delay in seconds; 0 disables waiting
        max_delay: Delay cap in seconds
    """

    max_attempts: int = 3
    base_delay: float = 30.0
    max_delay: float = 3600.0

    def next_delay(self, attempt: int, previous: float | None = None) -> float:
        if self.base_delay <= 0:
            return 0.0
        prev = previous if previous and previous > 0 else self.base_delay
        upper = max(self.base_delay, prev * 3)
        return min(self.max_delay, random.uniform(self.base_delay, upper))

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_attempts:
            return False
        if error is not None:
            return is_retryable(error)
        return True


def classify_failure(
    error: Exception,
    strategy: RetryStrategy,
    attempt: int,
    previous: float | None = None,
) -> Retry | Fatal:
    """Turn an exception from attempt ``attempt`` into a retry decision.

    A server hint (``retry_after``) wins over the computed backoff.
    """
    if not strategy.should_retry(attempt, error):
        return Fatal(error)
    hint = get_retry_after(error)
    wait = hint if hint is not None else strategy.next_delay(attempt, previous)
    return Retry(wait_for=wait, error=error)


@dataclass
class RetryLoop:
    """Runs one step at a time until it yields ``Ok`` or ``Fatal``.

    ``max_attempts`` is a hard ceiling independent of what steps decide.

    Example:
        >>> loop = RetryLoop(max_attempts=5, sleep=lambda s: None)
        >>> loop.run(lambda attempt: Ok(attempt) if attempt == 3 else Retry(0.1, ValueError()))
        Ok(value=3)
        >>> loop.attempt, round(loop.total_wait, 1)
        (3, 0.2)
    """

    max_attempts: int = 3
    sleep: Callable[[float], None] = time.sleep
    on_retry: Callable[[int, Retry], None] | None = None
    attempt: int = field(default=0, init=False)
    total_wait: float = field(default=0.0, init=False)
    errors: list[Exception] = field(default_factory=list, init=False)

    def run(self, step: Callable[[int], Outcome[T]]) -> Result[T]:
        while True:
            self.attempt += 1
            outcome = step(self.attempt)

            if isinstance(outcome, Ok):
                return outcome

            self.errors.append(outcome.error)
            if isinstance(outcome, Fatal) or self.attempt >= self.max_attempts:
                return Err(outcome.error)

            if self.on_retry:
                self.on_retry(self.attempt, outcome)
            if outcome.wait_for > 0:
                self.sleep(outcome.wait_for)
                self.total_wait += outcome.wait_for

    def summary(self) -> dict[str, Any]:
        return {
            "attempts": self.attempt,
            "total_wait_seconds": round(self.total_wait, 3),
            "errors": [str(e) for e in self.errors],
        }
