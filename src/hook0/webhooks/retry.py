"""Retry policy for failed deliveries.

Maps (retry_count, failure class, now) to either a time at which the same
request attempt becomes claimable again, or a decision to give up. The
policy holds no state besides its configuration and random source, so the
same inputs and seed always produce the same decision.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from hook0.config import RetrySettings
from hook0.models import FailureClass, RetrySchedule

# 2**62 seconds is far beyond any max_delay; avoids float overflow
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class GiveUp:
    """Stop retrying: the attempt is marked failed."""

    reason: str


@dataclass(frozen=True)
class RetryAt:
    """Retry the attempt once `at` is reached."""

    at: datetime
    delay_seconds: float


RetryDecision = GiveUp | RetryAt


def backoff_delay(retry_count: int, base_delay: float, max_delay: float) -> float:
    """Unjittered exponential delay: min(base * 2**retry_count, max_delay)."""
    exponent = min(max(retry_count, 0), _MAX_EXPONENT)
    return min(base_delay * 2**exponent, max_delay)


class RetryPolicy:
    """Decides what happens after a failed execution.

    Example:
        ```python
        policy = RetryPolicy(RetrySettings(max_retries=5))
        decision = policy.decide(attempt.retry_count, failure, now)
        if isinstance(decision, RetryAt):
            ...
        ```
    """

    def __init__(
        self,
        settings: RetrySettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the policy.

        Args:
            settings: Global retry settings. Defaults to RetrySettings().
            rng: Random source for jitter. Seed it for reproducible decisions.
        """
        self.settings = settings or RetrySettings()
        self._rng = rng or random.Random()

    def max_retries(self, schedule: RetrySchedule | None = None) -> int:
        """Retry ceiling, taking a subscription override into account."""
        if schedule is not None:
            return schedule.max_attempts
        return self.settings.max_retries

    def unjittered_delay(self, retry_count: int, schedule: RetrySchedule | None = None) -> float:
        """Delay in seconds before the next execution, without jitter."""
        if schedule is not None:
            return schedule.unjittered_delay(retry_count)
        return backoff_delay(
            retry_count, self.settings.base_delay_seconds, self.settings.max_delay_seconds
        )

    def jitter(self) -> float:
        """Draw a jitter factor within the configured bounds."""
        return self._rng.uniform(self.settings.jitter_min, self.settings.jitter_max)

    def decide(
        self,
        retry_count: int,
        failure: FailureClass,
        now: datetime,
        schedule: RetrySchedule | None = None,
    ) -> RetryDecision:
        """Decide whether and when to retry.

        Args:
            retry_count: Retries already performed for this attempt.
            failure: Classification of the failed execution.
            now: Decision time.
            schedule: Optional subscription retry schedule.

        Returns:
            GiveUp for non-retryable failures or an exhausted ceiling,
            otherwise RetryAt with the jittered delay.
        """
        if not failure.retryable:
            code = f" {failure.http_code}" if failure.http_code is not None else ""
            return GiveUp(reason=f"{failure.error.value}{code} is not retryable")

        ceiling = self.max_retries(schedule)
        if retry_count >= ceiling:
            return GiveUp(reason=f"retry ceiling reached ({ceiling})")

        delay = self.unjittered_delay(retry_count, schedule) * self.jitter()
        return RetryAt(at=now + timedelta(seconds=delay), delay_seconds=delay)
