"""Pydantic schemas for API request/response models."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from hook0.models import AttemptStatus, Event, RequestAttempt, Response, utc_now


class HealthResponse(BaseModel):
    """Response model for health check."""

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "unhealthy"]
    version: str
    storage_connected: bool


class IngestEventRequest(BaseModel):
    """Request body for ingesting an event.

    The payload is carried as a string: either the payload itself
    (payload_encoding="string") or its base64 encoding for binary payloads.

    Attributes:
        event_id: Caller-supplied event ID; re-sending it creates nothing new.
        application_id: Tenant scope.
        event_type: Event type name.
        payload: Payload as a string or base64.
        payload_encoding: How payload is encoded.
        payload_content_type: MIME type sent as the outbound Content-Type.
        labels: Routing labels (at least one).
        occurred_at: When the event happened (defaults to now).
    """

    model_config = ConfigDict(extra="forbid")

    event_id: UUID
    application_id: UUID
    event_type: str = Field(min_length=1, description="Event type name")
    payload: str = Field(description="Payload, raw or base64 encoded")
    payload_encoding: Literal["string", "base64"] = Field(
        default="string", description="Encoding of the payload field"
    )
    payload_content_type: str = Field(default="application/json", min_length=1)
    labels: dict[str, str] = Field(min_length=1, description="Routing labels")
    occurred_at: datetime | None = Field(default=None, description="Defaults to now")

    def payload_bytes(self) -> bytes:
        """Decode the payload to the exact bytes to deliver.

        Raises:
            ValueError: If a base64 payload is invalid.
        """
        if self.payload_encoding == "base64":
            try:
                return base64.b64decode(self.payload, validate=True)
            except binascii.Error as e:
                raise ValueError(f"Invalid base64 payload: {e}") from e
        return self.payload.encode("utf-8")

    def to_event(self) -> Event:
        """Build the Event to store."""
        now = utc_now()
        return Event(
            event_id=self.event_id,
            application_id=self.application_id,
            event_type=self.event_type,
            payload=self.payload_bytes(),
            payload_content_type=self.payload_content_type,
            labels=self.labels,
            occurred_at=self.occurred_at or now,
            received_at=now,
        )


class RequestAttemptResponse(BaseModel):
    """Response model for a request attempt."""

    model_config = ConfigDict(extra="forbid")

    request_attempt_id: UUID
    application_id: UUID
    event_id: UUID
    subscription_id: UUID
    created_at: datetime
    picked_at: datetime | None
    succeeded_at: datetime | None
    failed_at: datetime | None
    retry_count: int
    delay_until: datetime | None
    worker_name: str | None
    worker_version: str | None
    response_id: UUID | None
    status: AttemptStatus

    @classmethod
    def from_attempt(cls, attempt: RequestAttempt, now: datetime) -> RequestAttemptResponse:
        """Build the response model, computing the status at `now`."""
        return cls(**attempt.model_dump(), status=attempt.status_at(now))


class IngestEventResponse(BaseModel):
    """Response model for event ingestion."""

    model_config = ConfigDict(extra="forbid")

    event_id: UUID
    request_attempts: list[RequestAttemptResponse] = Field(
        default_factory=list, description="Attempts created by this call"
    )


class RequestAttemptListResponse(BaseModel):
    """Response model for listing request attempts."""

    model_config = ConfigDict(extra="forbid")

    request_attempts: list[RequestAttemptResponse]
    count: int = Field(ge=0)


class ResponseDetail(BaseModel):
    """Response model for a recorded delivery response."""

    model_config = ConfigDict(extra="forbid")

    response_id: UUID
    request_attempt_id: UUID
    application_id: UUID
    response_error_name: str | None
    http_code: int | None
    headers: dict[str, Any] | None
    body: str | None
    elapsed_time_ms: int
    created_at: datetime

    @classmethod
    def from_response(cls, response: Response) -> ResponseDetail:
        """Build the response model."""
        error = response.response_error_name
        return cls(
            **response.model_dump(exclude={"response_error_name"}),
            response_error_name=error.value if error is not None else None,
        )


class ReplayRequest(BaseModel):
    """Request body for replaying an event.

    Attributes:
        application_id: Tenant scope of the event.
        subscription_id: Replay to this subscription only (optional).
    """

    model_config = ConfigDict(extra="forbid")

    application_id: UUID
    subscription_id: UUID | None = None


class ReplayResponse(BaseModel):
    """Response model for a replay."""

    model_config = ConfigDict(extra="forbid")

    event_id: UUID
    request_attempts: list[RequestAttemptResponse]


class AttemptStatsResponse(BaseModel):
    """Response model for request attempt counts by status."""

    model_config = ConfigDict(extra="forbid")

    application_id: UUID
    waiting: int
    pending: int
    in_progress: int
    successful: int
    failed: int
