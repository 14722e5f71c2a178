"""Core Hook0 service layer.

This module provides the Hook0Service that combines the Attempt Store,
dispatcher, replay and worker pool behind one interface used by the HTTP
API and the CLI.

Example:
    ```python
    from hook0.service import Hook0Service

    async with Hook0Service.create() as hook0:
        attempts = await hook0.ingest_event(event)
        history = await hook0.list_request_attempts(application_id)
        await hook0.replay(event.event_id, application_id)
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from hook0.config import Settings
from hook0.exceptions import NotFoundError
from hook0.logging import get_logger
from hook0.models import AttemptStatus, Event, RequestAttempt, Response, utc_now
from hook0.storage import AttemptStats, Hook0Storage
from hook0.webhooks import DeliveryClient, Dispatcher, Replayer, RetryPolicy, WorkerPool

logger = get_logger(__name__)

MAX_PAGE_SIZE = 1000


@dataclass
class Hook0Service:
    """High-level service of the delivery engine.

    This service provides:
    - ingest_event(): store an event and create its request attempts
    - dispatch_pending(): recover events whose fan-out never completed
    - replay(): re-queue a past event
    - list_request_attempts() / get_response(): delivery history
    - worker_pool(): output workers bound to the same store

    Attributes:
        storage: Attempt Store.
        settings: Configuration settings.
    """

    storage: Hook0Storage
    settings: Settings
    dispatcher: Dispatcher = field(init=False, repr=False)
    replayer: Replayer = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Build the components sharing the store."""
        self.dispatcher = Dispatcher(self.storage)
        self.replayer = Replayer(self.storage)

    @classmethod
    def create(cls, settings: Settings | None = None) -> Hook0Service:
        """Create a Hook0Service with default dependencies.

        Args:
            settings: Optional settings. Uses defaults if None.

        Returns:
            Configured Hook0Service instance.
        """
        if settings is None:
            settings = Settings()
        return cls(
            storage=Hook0Storage(
                database_path=settings.database_path,
                busy_timeout_ms=settings.store_busy_timeout_ms,
            ),
            settings=settings,
        )

    async def initialize(self) -> None:
        """Initialize the service (open the store, create the schema)."""
        await self.storage.initialize()
        logger.info("Hook0 service initialized", database_path=self.storage.database_path)

    async def close(self) -> None:
        """Close the service."""
        await self.storage.close()

    async def __aenter__(self) -> Hook0Service:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def ingest_event(self, event: Event) -> list[RequestAttempt]:
        """Store an event and create attempts for matching subscriptions.

        Ingesting the same event twice creates nothing new.
        """
        return await self.dispatcher.on_event_ingested(event)

    async def dispatch_pending(self, limit: int = 100) -> int:
        """Dispatch stored events that were never fanned out.

        Returns:
            Number of attempts created.
        """
        return await self.dispatcher.dispatch_pending_events(limit=limit)

    async def replay(
        self,
        event_id: UUID,
        application_id: UUID,
        subscription_id: UUID | None = None,
    ) -> list[RequestAttempt]:
        """Re-queue a past event. See Replayer.replay."""
        return await self.replayer.replay(event_id, application_id, subscription_id)

    async def list_request_attempts(
        self,
        application_id: UUID,
        event_id: UUID | None = None,
        subscription_id: UUID | None = None,
        status: AttemptStatus | None = None,
        min_created_at: datetime | None = None,
        max_created_at: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
        now: datetime | None = None,
    ) -> list[RequestAttempt]:
        """List an application's request attempts, newest first."""
        return await self.storage.list_attempts(
            application_id,
            now=now or utc_now(),
            event_id=event_id,
            subscription_id=subscription_id,
            status=status,
            min_created_at=min_created_at,
            max_created_at=max_created_at,
            limit=min(limit, MAX_PAGE_SIZE),
            offset=offset,
        )

    async def get_response(self, response_id: UUID, application_id: UUID) -> Response:
        """Get a recorded response.

        Raises:
            NotFoundError: If the response does not exist in this application.
        """
        response = await self.storage.get_response(response_id, application_id)
        if response is None:
            raise NotFoundError("Response", str(response_id))
        return response

    async def get_attempt_stats(self, application_id: UUID) -> AttemptStats:
        """Count an application's request attempts by status."""
        return await self.storage.get_attempt_stats(application_id, now=utc_now())

    def worker_pool(self, client: DeliveryClient | None = None) -> WorkerPool:
        """Build an output worker pool on this service's store."""
        return WorkerPool(
            self.storage,
            self.settings.worker,
            self.settings.retry,
            client=client,
            policy=RetryPolicy(self.settings.retry),
        )
