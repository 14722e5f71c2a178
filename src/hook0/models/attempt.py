"""Request attempt and response models.

A RequestAttempt is the delivery chain of one (event, subscription) pair:
it is claimed by a worker, executed, and then either succeeds, is
rescheduled on the same row, or fails terminally. Every execution leaves
one immutable Response.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .base import utc_now

# HTTP statuses worth retrying besides 5xx
RETRYABLE_HTTP_CODES = frozenset({408, 429})


class ResponseError(str, Enum):
    """Why a delivery execution failed."""

    CONNECTION = "E_CONNECTION"  # DNS, refused, reset, TLS
    TIMEOUT = "E_TIMEOUT"
    HTTP = "E_HTTP"  # non-2xx status
    INVALID_TARGET = "E_INVALID_TARGET"  # malformed or forbidden URL, never sent


@dataclass(frozen=True)
class FailureClass:
    """Classification of a failed execution, decided once by the worker.

    Attributes:
        error: Failure category.
        http_code: Status code for E_HTTP failures.
    """

    error: ResponseError
    http_code: int | None = None

    @property
    def retryable(self) -> bool:
        """Whether the Retry Policy may schedule another execution."""
        if self.error is ResponseError.INVALID_TARGET:
            return False
        if self.error is ResponseError.HTTP:
            if self.http_code is None:
                return False
            return self.http_code >= 500 or self.http_code in RETRYABLE_HTTP_CODES
        return True


class AttemptStatus(str, Enum):
    """Observable state of a request attempt."""

    WAITING = "waiting"  # scheduled in the future
    PENDING = "pending"  # due, not picked yet
    IN_PROGRESS = "in_progress"  # picked by a worker
    SUCCESSFUL = "successful"
    FAILED = "failed"


class RequestAttempt(BaseModel):
    """Delivery chain record for one (event, subscription) pair.

    Attributes:
        request_attempt_id: Unique identifier.
        application_id: Tenant scope (copied from the event).
        event_id: Event being delivered.
        subscription_id: Subscription delivered to.
        created_at: When the attempt was created by dispatch or replay.
        picked_at: When a worker claimed it (None when claimable).
        succeeded_at: Terminal success marker.
        failed_at: Terminal failure marker.
        retry_count: Number of executions that were followed by a retry.
        delay_until: Earliest time the attempt can be claimed.
        worker_name: Worker that picked it last.
        worker_version: Version of that worker.
        response_id: Response of the latest execution.
    """

    model_config = ConfigDict(extra="forbid")

    request_attempt_id: UUID = Field(default_factory=uuid4)
    application_id: UUID
    event_id: UUID
    subscription_id: UUID
    created_at: datetime = Field(default_factory=utc_now)
    picked_at: datetime | None = None
    succeeded_at: datetime | None = None
    failed_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)
    delay_until: datetime | None = None
    worker_name: str | None = None
    worker_version: str | None = None
    response_id: UUID | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the attempt reached success or terminal failure."""
        return self.succeeded_at is not None or self.failed_at is not None

    def status_at(self, now: datetime) -> AttemptStatus:
        """Compute the observable status at a given time."""
        if self.failed_at is not None:
            return AttemptStatus.FAILED
        if self.succeeded_at is not None:
            return AttemptStatus.SUCCESSFUL
        if self.picked_at is not None:
            return AttemptStatus.IN_PROGRESS
        if self.delay_until is not None and self.delay_until > now:
            return AttemptStatus.WAITING
        return AttemptStatus.PENDING


class Response(BaseModel):
    """Recorded outcome of one execution of a request attempt.

    Attributes:
        response_id: Unique identifier.
        request_attempt_id: Attempt that produced it.
        application_id: Tenant scope.
        response_error_name: Failure category, None on success.
        http_code: Status code if an HTTP response was received.
        headers: Response headers if an HTTP response was received.
        body: Response body (truncated) if an HTTP response was received.
        elapsed_time_ms: Duration of the execution.
        created_at: When the response was recorded.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    response_id: UUID = Field(default_factory=uuid4)
    request_attempt_id: UUID
    application_id: UUID
    response_error_name: ResponseError | None = None
    http_code: int | None = None
    headers: dict[str, Any] | None = None
    body: str | None = None
    elapsed_time_ms: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_success(self) -> bool:
        """Whether the execution succeeded."""
        return self.response_error_name is None

    @property
    def failure(self) -> FailureClass | None:
        """Failure classification carried by this response."""
        if self.response_error_name is None:
            return None
        return FailureClass(self.response_error_name, self.http_code)
