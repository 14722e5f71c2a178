"""Subscription models: a consumer's registration to receive events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .base import utc_now


class Target(BaseModel):
    """HTTP endpoint a subscription delivers to.

    The URL is kept as a plain string: a malformed or forbidden URL is not a
    configuration error for the delivery engine, it is recorded as an
    E_INVALID_TARGET response when an attempt is executed.
    """

    model_config = ConfigDict(extra="forbid")

    method: str = Field(default="POST", min_length=1)
    url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()


# 5s, 5m, 30m, 2h, 5h, then 10h
DEFAULT_RETRY_INTERVALS = (5, 300, 1800, 7200, 18000, 36000, 36000, 36000)


class RetryStrategy(str, Enum):
    """How a RetrySchedule turns a retry count into a delay."""

    EXPONENTIAL = "exponential"  # intervals[retry_count], growing by convention, last repeated
    LINEAR = "linear"  # intervals[0] for every retry
    CUSTOM = "custom"  # intervals[retry_count], last interval repeated


class RetrySchedule(BaseModel):
    """Per-subscription retry policy overriding the global one.

    Attributes:
        strategy: How delays are derived from intervals.
        intervals: Delays in seconds (meaning depends on strategy).
            Defaults to DEFAULT_RETRY_INTERVALS.
        max_attempts: Retries allowed before giving up.
    """

    model_config = ConfigDict(extra="forbid")

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    intervals: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRY_INTERVALS), min_length=1
    )
    max_attempts: int = Field(default=8, ge=1, le=100)

    @field_validator("intervals")
    @classmethod
    def _positive_intervals(cls, value: list[int]) -> list[int]:
        for interval in value:
            if interval < 1:
                raise ValueError("all intervals must be at least 1 second")
            if interval > 7 * 24 * 3600:
                raise ValueError("intervals cannot exceed one week")
        return value

    def unjittered_delay(self, retry_count: int) -> float:
        """Delay in seconds before retry number retry_count + 1.

        Exponential and custom schedules both walk the interval list and
        repeat its last entry; exponential ones are expected to list
        growing intervals, as in DEFAULT_RETRY_INTERVALS.
        """
        if self.strategy is RetryStrategy.LINEAR:
            return float(self.intervals[0])
        index = min(retry_count, len(self.intervals) - 1)
        return float(self.intervals[index])


class Subscription(BaseModel):
    """A consumer's registration to receive matching events at a target.

    The delivery engine only reads subscriptions; they are created and
    updated by the owning application through the management API.

    Attributes:
        subscription_id: Unique identifier.
        application_id: Tenant scope.
        is_enabled: Disabled subscriptions get no new attempts and their
            pending attempts are no longer claimed.
        event_types: Event types this subscription receives.
        label_key: Label that must be present on the event...
        label_value: ...with exactly this value.
        target: HTTP endpoint.
        secret: Shared secret used to sign deliveries.
        dedicated_workers: Worker names allowed to deliver (empty = general pool).
        retry_schedule: Optional retry policy override.
        description: Human-readable description.
    """

    model_config = ConfigDict(extra="forbid")

    subscription_id: UUID = Field(default_factory=uuid4)
    application_id: UUID
    is_enabled: bool = True
    event_types: set[str] = Field(min_length=1)
    label_key: str = Field(min_length=1)
    label_value: str = Field(min_length=1)
    target: Target
    secret: str = Field(min_length=1)
    dedicated_workers: list[str] = Field(default_factory=list)
    retry_schedule: RetrySchedule | None = None
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _unique_workers(self) -> "Subscription":
        if len(set(self.dedicated_workers)) != len(self.dedicated_workers):
            raise ValueError("dedicated_workers must not contain duplicates")
        return self
