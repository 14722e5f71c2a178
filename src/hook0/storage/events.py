"""Event storage operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from hook0.models import Event

from .base import to_db_time


class EventMixin:
    """Mixin providing event persistence.

    Events are written once and never updated, except for the
    dispatched_at marker set when fan-out completes.
    """

    # These will be provided by the base class
    transaction: Any
    _event_to_row: Any
    _row_to_event: Any

    async def insert_event(self, event: Event) -> bool:
        """Store an event.

        Args:
            event: Event to store.

        Returns:
            True if stored, False if an event with this ID already existed.
        """
        row = self._event_to_row(event)
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO event (
                    event_id, application_id, event_type, payload, payload_content_type,
                    labels, occurred_at, received_at, dispatched_at
                ) VALUES (
                    :event_id, :application_id, :event_type, :payload, :payload_content_type,
                    :labels, :occurred_at, :received_at, :dispatched_at
                )
                """,
                row,
            )
            return cursor.rowcount == 1

    async def get_event(
        self,
        event_id: UUID,
        application_id: UUID | None = None,
    ) -> Event | None:
        """Get an event by ID, optionally scoped to an application."""
        query = "SELECT * FROM event WHERE event_id = ?"
        params: list[str] = [str(event_id)]
        if application_id is not None:
            query += " AND application_id = ?"
            params.append(str(application_id))
        async with self.transaction(write=False) as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return self._row_to_event(row) if row is not None else None

    async def mark_event_dispatched(self, event_id: UUID, at: datetime) -> bool:
        """Record that fan-out of an event completed.

        Returns:
            True if the marker was set, False if it already was.
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE event SET dispatched_at = ? WHERE event_id = ? AND dispatched_at IS NULL",
                (to_db_time(at), str(event_id)),
            )
            return cursor.rowcount == 1

    async def list_undispatched_events(self, limit: int = 100) -> list[Event]:
        """List events whose fan-out never completed, oldest first."""
        async with self.transaction(write=False) as conn:
            async with conn.execute(
                "SELECT * FROM event WHERE dispatched_at IS NULL ORDER BY received_at LIMIT ?",
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]
