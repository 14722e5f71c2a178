"""Subscription storage operations.

Subscriptions are owned by the management API; the delivery engine reads
them. Writes are provided for the management collaborator and for tests.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from hook0.models import Subscription


class SubscriptionMixin:
    """Mixin providing subscription persistence."""

    # These will be provided by the base class
    transaction: Any
    _subscription_to_row: Any
    _row_to_subscription: Any

    async def save_subscription(self, subscription: Subscription) -> None:
        """Insert or replace a subscription."""
        row = self._subscription_to_row(subscription)
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO subscription (
                    subscription_id, application_id, is_enabled, event_types, label_key,
                    label_value, target_method, target_url, target_headers, secret,
                    dedicated_workers, retry_schedule, description, created_at
                ) VALUES (
                    :subscription_id, :application_id, :is_enabled, :event_types, :label_key,
                    :label_value, :target_method, :target_url, :target_headers, :secret,
                    :dedicated_workers, :retry_schedule, :description, :created_at
                )
                ON CONFLICT(subscription_id) DO UPDATE SET
                    is_enabled = excluded.is_enabled,
                    event_types = excluded.event_types,
                    label_key = excluded.label_key,
                    label_value = excluded.label_value,
                    target_method = excluded.target_method,
                    target_url = excluded.target_url,
                    target_headers = excluded.target_headers,
                    secret = excluded.secret,
                    dedicated_workers = excluded.dedicated_workers,
                    retry_schedule = excluded.retry_schedule,
                    description = excluded.description
                """,
                row,
            )

    async def get_subscription(
        self,
        subscription_id: UUID,
        application_id: UUID | None = None,
    ) -> Subscription | None:
        """Get a subscription by ID, optionally scoped to an application."""
        query = "SELECT * FROM subscription WHERE subscription_id = ?"
        params: list[str] = [str(subscription_id)]
        if application_id is not None:
            query += " AND application_id = ?"
            params.append(str(application_id))
        async with self.transaction(write=False) as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return self._row_to_subscription(row) if row is not None else None

    async def list_subscriptions(
        self,
        application_id: UUID,
        enabled_only: bool = False,
    ) -> list[Subscription]:
        """List an application's subscriptions, oldest first."""
        query = "SELECT * FROM subscription WHERE application_id = ?"
        if enabled_only:
            query += " AND is_enabled = 1"
        query += " ORDER BY created_at, subscription_id"
        async with self.transaction(write=False) as conn:
            async with conn.execute(query, (str(application_id),)) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    async def set_subscription_enabled(
        self,
        subscription_id: UUID,
        enabled: bool,
    ) -> bool:
        """Enable or disable a subscription.

        Disabling takes effect on the next claim: pending attempts of a
        disabled subscription are no longer picked up.

        Returns:
            True if the subscription exists.
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE subscription SET is_enabled = ? WHERE subscription_id = ?",
                (int(enabled), str(subscription_id)),
            )
            return cursor.rowcount == 1
