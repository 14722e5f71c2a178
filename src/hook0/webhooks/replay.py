"""Replay of past events.

Replaying re-runs dispatch for a stored event against the current state of
its application's subscriptions. It only ever adds attempts: when the pair
already has a non-terminal attempt, that attempt is returned instead of
creating a second one, so a pair never has two attempts in flight.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from hook0.exceptions import NotFoundError, ValidationError
from hook0.logging import get_logger
from hook0.models import RequestAttempt, Subscription, utc_now
from hook0.storage import Hook0Storage

from .matcher import matching_subscriptions

logger = get_logger(__name__)


def replay_dispatch_key(event_id: UUID, subscription_id: UUID) -> str:
    """Unique idempotency key of a replayed attempt."""
    return f"{event_id}:{subscription_id}:replay:{uuid4()}"


class Replayer:
    """Re-queues historical events.

    Example:
        ```python
        replayer = Replayer(storage)
        attempts = await replayer.replay(event_id, application_id)
        ```
    """

    def __init__(self, storage: Hook0Storage) -> None:
        """Initialize the replayer.

        Args:
            storage: Attempt Store.
        """
        self._storage = storage

    async def replay(
        self,
        event_id: UUID,
        application_id: UUID,
        subscription_id: UUID | None = None,
        now: datetime | None = None,
    ) -> list[RequestAttempt]:
        """Replay an event.

        Args:
            event_id: Event to replay.
            application_id: Tenant scope the event must belong to.
            subscription_id: Replay to this subscription only. Otherwise the
                event goes to every currently matching subscription.
            now: Replay time (defaults to the current time).

        Returns:
            One attempt per target subscription, created or reused.

        Raises:
            NotFoundError: If the event or subscription does not exist in
                this application.
            ValidationError: If the requested subscription is disabled.
        """
        now = now or utc_now()
        async with self._storage.transaction():
            event = await self._storage.get_event(event_id, application_id)
            if event is None:
                raise NotFoundError("Event", str(event_id))

            if subscription_id is not None:
                subscription = await self._storage.get_subscription(
                    subscription_id, application_id
                )
                if subscription is None:
                    raise NotFoundError("Subscription", str(subscription_id))
                if not subscription.is_enabled:
                    raise ValidationError(
                        "subscription_id", f"Subscription {subscription_id} is disabled"
                    )
                targets = [subscription]
            else:
                subscriptions = await self._storage.list_subscriptions(
                    application_id, enabled_only=True
                )
                targets = matching_subscriptions(event, subscriptions)

            attempts = [await self._attempt_for(event_id, application_id, s, now) for s in targets]

        logger.info(
            "Event replayed",
            event_id=str(event_id),
            application_id=str(application_id),
            attempts=len(attempts),
        )
        return attempts

    async def _attempt_for(
        self,
        event_id: UUID,
        application_id: UUID,
        subscription: Subscription,
        now: datetime,
    ) -> RequestAttempt:
        existing = await self._storage.find_open_attempt(event_id, subscription.subscription_id)
        if existing is not None:
            return existing

        attempt = RequestAttempt(
            application_id=application_id,
            event_id=event_id,
            subscription_id=subscription.subscription_id,
            created_at=now,
            delay_until=now,
        )
        await self._storage.insert_attempt(
            attempt, replay_dispatch_key(event_id, subscription.subscription_id)
        )
        return attempt
