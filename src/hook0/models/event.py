"""Event model: an immutable fact submitted once by the ingestion API."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import ensure_utc, utc_now


class Event(BaseModel):
    """An event to deliver to matching subscriptions.

    Events are created once by the ingestion collaborator and never mutated.
    The payload is an opaque byte string forwarded to targets unmodified.

    Attributes:
        event_id: Caller-supplied identifier, used for idempotent ingestion.
        application_id: Tenant scope of the event.
        event_type: Type name matched against subscriptions' event types.
        payload: Raw payload bytes.
        payload_content_type: MIME type sent as the outbound Content-Type.
        labels: Non-empty routing labels matched against label filters.
        occurred_at: When the event happened according to the producer.
        received_at: When Hook0 received it.
        dispatched_at: When fan-out to subscriptions completed (None if not yet).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    event_id: UUID
    application_id: UUID
    event_type: str = Field(min_length=1)
    payload: bytes
    payload_content_type: str = Field(default="application/json", min_length=1)
    labels: dict[str, str]
    occurred_at: datetime = Field(default_factory=utc_now)
    received_at: datetime = Field(default_factory=utc_now)
    dispatched_at: datetime | None = None

    @field_validator("labels")
    @classmethod
    def _labels_not_empty(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("an event must carry at least one label")
        return value

    @field_validator("occurred_at", "received_at", "dispatched_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None
