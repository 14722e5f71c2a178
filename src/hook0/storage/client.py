"""SQLite storage client for the Hook0 delivery engine.

This module provides the main Hook0Storage class that combines
all storage operations through mixins.

Example:
    ```python
    from hook0.storage import Hook0Storage

    async with Hook0Storage("hook0.db") as storage:
        await storage.insert_event(event)
        claim = await storage.claim_next_attempt("default", "0.1.0", now=utc_now())
    ```
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .attempts import AttemptMixin
from .base import StorageBase, to_db_time
from .events import EventMixin
from .subscriptions import SubscriptionMixin


class AttemptStats(BaseModel):
    """Request attempt counts of an application, by status."""

    model_config = ConfigDict(extra="forbid")

    waiting: int = Field(default=0, ge=0, description="Scheduled in the future")
    pending: int = Field(default=0, ge=0, description="Due, not picked yet")
    in_progress: int = Field(default=0, ge=0, description="Picked by a worker")
    successful: int = Field(default=0, ge=0, description="Delivered")
    failed: int = Field(default=0, ge=0, description="Given up")


class Hook0Storage(EventMixin, SubscriptionMixin, AttemptMixin, StorageBase):
    """Async SQLite storage for events, subscriptions, attempts and responses.

    This class combines functionality from multiple mixins:
    - EventMixin: insert_event, get_event, mark_event_dispatched, ...
    - SubscriptionMixin: save_subscription, get_subscription, list_subscriptions, ...
    - AttemptMixin: insert_attempt, claim_next_attempt, finalize_attempt, ...

    Every public method runs in its own transaction unless called inside an
    enclosing `async with storage.transaction():` block of the same task.

    Example:
        ```python
        storage = Hook0Storage("/var/lib/hook0/hook0.db")
        await storage.initialize()

        async with storage.transaction():
            await storage.insert_event(event)
            for subscription in await storage.list_subscriptions(app_id, enabled_only=True):
                ...

        await storage.close()
        ```
    """

    async def __aenter__(self) -> Hook0Storage:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def get_attempt_stats(self, application_id: UUID, now: datetime) -> AttemptStats:
        """Count an application's request attempts by status.

        Args:
            application_id: Tenant scope.
            now: Reference time for the waiting/pending distinction.
        """
        async with self.transaction(write=False) as conn:
            async with conn.execute(
                """
                SELECT
                    COALESCE(SUM(failed_at IS NOT NULL), 0) AS failed,
                    COALESCE(SUM(succeeded_at IS NOT NULL), 0) AS successful,
                    COALESCE(SUM(failed_at IS NULL AND succeeded_at IS NULL
                        AND picked_at IS NOT NULL), 0) AS in_progress,
                    COALESCE(SUM(failed_at IS NULL AND succeeded_at IS NULL
                        AND picked_at IS NULL AND delay_until > :now), 0) AS waiting,
                    COALESCE(SUM(failed_at IS NULL AND succeeded_at IS NULL
                        AND picked_at IS NULL
                        AND (delay_until IS NULL OR delay_until <= :now)), 0) AS pending
                FROM request_attempt
                WHERE application_id = :application_id
                """,
                {"application_id": str(application_id), "now": to_db_time(now)},
            ) as cursor:
                row = await cursor.fetchone()
        return AttemptStats(**{key: row[key] for key in row.keys()})


__all__ = ["AttemptStats", "Hook0Storage"]
