"""Fan-out of ingested events to matching subscriptions.

For each event the dispatcher creates one request attempt per matching
subscription, in the same transaction that marks the event dispatched.
Dispatching is idempotent: the initial attempt of an (event, subscription)
pair is keyed, so running it twice (e.g. after a crash between ingestion
and fan-out) creates nothing new.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from hook0.logging import get_logger
from hook0.models import Event, RequestAttempt, utc_now
from hook0.storage import Hook0Storage

from .matcher import matching_subscriptions

logger = get_logger(__name__)


def initial_dispatch_key(event_id: UUID, subscription_id: UUID) -> str:
    """Idempotency key of the attempt created when an event is dispatched."""
    return f"{event_id}:{subscription_id}:initial"


class Dispatcher:
    """Creates request attempts for events.

    Example:
        ```python
        dispatcher = Dispatcher(storage)
        attempts = await dispatcher.on_event_ingested(event)
        ```
    """

    def __init__(self, storage: Hook0Storage) -> None:
        """Initialize the dispatcher.

        Args:
            storage: Attempt Store.
        """
        self._storage = storage

    async def on_event_ingested(
        self,
        event: Event,
        now: datetime | None = None,
    ) -> list[RequestAttempt]:
        """Store an event if needed and create attempts for matching subscriptions.

        Attempts become claimable at max(now, occurred_at), so events
        stamped in the future are held until then.

        Args:
            event: Ingested event.
            now: Dispatch time (defaults to the current time).

        Returns:
            The attempts created by this call (empty when already dispatched).
        """
        now = now or utc_now()
        created: list[RequestAttempt] = []

        async with self._storage.transaction():
            if not await self._storage.insert_event(event):
                # A known event ID is routed by the stored event, never the re-sent copy
                stored = await self._storage.get_event(event.event_id)
                if stored is None or stored.dispatched_at is not None:
                    logger.debug("Event already dispatched", event_id=str(event.event_id))
                    return []
                event = stored
            delay_until = max(now, event.occurred_at)
            subscriptions = await self._storage.list_subscriptions(
                event.application_id, enabled_only=True
            )
            matched = matching_subscriptions(event, subscriptions)
            for subscription in matched:
                attempt = RequestAttempt(
                    application_id=event.application_id,
                    event_id=event.event_id,
                    subscription_id=subscription.subscription_id,
                    created_at=now,
                    delay_until=delay_until,
                )
                key = initial_dispatch_key(event.event_id, subscription.subscription_id)
                if await self._storage.insert_attempt(attempt, key):
                    created.append(attempt)
            await self._storage.mark_event_dispatched(event.event_id, now)

        logger.info(
            "Event dispatched",
            event_id=str(event.event_id),
            event_type=event.event_type,
            matched=len(matched),
            created=len(created),
        )
        return created

    async def dispatch_pending_events(
        self,
        now: datetime | None = None,
        limit: int = 100,
    ) -> int:
        """Dispatch stored events whose fan-out never completed.

        Returns:
            Number of attempts created.
        """
        events = await self._storage.list_undispatched_events(limit=limit)
        created = 0
        for event in events:
            created += len(await self.on_event_ingested(event, now=now))
        if events:
            logger.info("Recovered undispatched events", events=len(events), attempts=created)
        return created
