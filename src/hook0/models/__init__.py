"""Data models for the Hook0 delivery engine."""

from .attempt import (
    RETRYABLE_HTTP_CODES,
    AttemptStatus,
    FailureClass,
    RequestAttempt,
    Response,
    ResponseError,
)
from .base import ensure_utc, utc_now
from .event import Event
from .subscription import (
    DEFAULT_RETRY_INTERVALS,
    RetrySchedule,
    RetryStrategy,
    Subscription,
    Target,
)

__all__ = [
    "DEFAULT_RETRY_INTERVALS",
    "RETRYABLE_HTTP_CODES",
    "AttemptStatus",
    "Event",
    "FailureClass",
    "RequestAttempt",
    "Response",
    "ResponseError",
    "RetrySchedule",
    "RetryStrategy",
    "Subscription",
    "Target",
    "ensure_utc",
    "utc_now",
]
