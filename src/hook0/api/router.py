"""FastAPI router for Hook0 API endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from hook0 import __version__
from hook0.exceptions import ValidationError
from hook0.models import AttemptStatus, utc_now
from hook0.service import MAX_PAGE_SIZE, Hook0Service

from .schemas import (
    AttemptStatsResponse,
    HealthResponse,
    IngestEventRequest,
    IngestEventResponse,
    ReplayRequest,
    ReplayResponse,
    RequestAttemptListResponse,
    RequestAttemptResponse,
    ResponseDetail,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Service instance (set by app lifespan)
_service: Hook0Service | None = None


def set_service(service: Hook0Service | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> Hook0Service:
    """Dependency to get the Hook0Service instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[Hook0Service, Depends(get_service)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    if _service is not None:
        return HealthResponse(status="healthy", version=__version__, storage_connected=True)
    return HealthResponse(status="unhealthy", version=__version__, storage_connected=False)


@router.post(
    "/events",
    response_model=IngestEventResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["events"],
)
async def ingest_event(
    request: IngestEventRequest,
    service: ServiceDep,
) -> IngestEventResponse:
    """Store an event and create request attempts for matching subscriptions.

    Used by the ingestion collaborator once an event has been validated.
    Re-sending an event ID returns an empty attempt list.
    """
    try:
        event = request.to_event()
    except ValueError as e:
        raise ValidationError("payload", str(e)) from e

    attempts = await service.ingest_event(event)
    if not attempts:
        logger.debug("No new request attempts for event %s", event.event_id)
    now = utc_now()
    return IngestEventResponse(
        event_id=event.event_id,
        request_attempts=[RequestAttemptResponse.from_attempt(a, now) for a in attempts],
    )


@router.post(
    "/events/{event_id}/replay",
    response_model=ReplayResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["events"],
)
async def replay_event(
    event_id: UUID,
    request: ReplayRequest,
    service: ServiceDep,
) -> ReplayResponse:
    """Re-queue a past event.

    Goes to every currently matching subscription, or to one subscription
    when subscription_id is given. Existing attempts are never modified.
    """
    attempts = await service.replay(event_id, request.application_id, request.subscription_id)
    now = utc_now()
    return ReplayResponse(
        event_id=event_id,
        request_attempts=[RequestAttemptResponse.from_attempt(a, now) for a in attempts],
    )


@router.get(
    "/request_attempts",
    response_model=RequestAttemptListResponse,
    tags=["history"],
)
async def list_request_attempts(
    service: ServiceDep,
    application_id: UUID,
    event_id: UUID | None = None,
    subscription_id: UUID | None = None,
    attempt_status: Annotated[AttemptStatus | None, Query(alias="status")] = None,
    min_created_at: datetime | None = None,
    max_created_at: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> RequestAttemptListResponse:
    """List an application's request attempts, newest first."""
    now = utc_now()
    attempts = await service.list_request_attempts(
        application_id,
        event_id=event_id,
        subscription_id=subscription_id,
        status=attempt_status,
        min_created_at=min_created_at,
        max_created_at=max_created_at,
        limit=limit,
        offset=offset,
        now=now,
    )
    return RequestAttemptListResponse(
        request_attempts=[RequestAttemptResponse.from_attempt(a, now) for a in attempts],
        count=len(attempts),
    )


@router.get(
    "/request_attempts/stats",
    response_model=AttemptStatsResponse,
    tags=["history"],
)
async def request_attempt_stats(
    service: ServiceDep,
    application_id: UUID,
) -> AttemptStatsResponse:
    """Count an application's request attempts by status."""
    stats = await service.get_attempt_stats(application_id)
    return AttemptStatsResponse(application_id=application_id, **stats.model_dump())


@router.get(
    "/responses/{response_id}",
    response_model=ResponseDetail,
    tags=["history"],
)
async def get_response(
    response_id: UUID,
    service: ServiceDep,
    application_id: UUID,
) -> ResponseDetail:
    """Get the recorded outcome of one execution."""
    response = await service.get_response(response_id, application_id)
    return ResponseDetail.from_response(response)
