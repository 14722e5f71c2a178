"""Request attempt and response storage operations.

The claim is a single conditional UPDATE: it only succeeds on a row that is
still unpicked, so two workers racing for the same attempt cannot both get
it. Finalization is conditional on the claim still being held, and terminal
rows are protected from any further update by a trigger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from hook0.logging import get_logger
from hook0.models import AttemptStatus, Event, RequestAttempt, Response, Subscription

from .base import to_db_time

logger = get_logger(__name__)

_OPEN = "succeeded_at IS NULL AND failed_at IS NULL"

_STATUS_FILTERS = {
    AttemptStatus.FAILED: "failed_at IS NOT NULL",
    AttemptStatus.SUCCESSFUL: "succeeded_at IS NOT NULL",
    AttemptStatus.IN_PROGRESS: f"{_OPEN} AND picked_at IS NOT NULL",
    AttemptStatus.WAITING: f"{_OPEN} AND picked_at IS NULL AND delay_until > :now",
    AttemptStatus.PENDING: (
        f"{_OPEN} AND picked_at IS NULL AND (delay_until IS NULL OR delay_until <= :now)"
    ),
}

# Dedicated workers only serve subscriptions naming them; the general pool
# only serves subscriptions without dedicated workers
_DEDICATED_SCOPE = (
    "EXISTS (SELECT 1 FROM json_each(s.dedicated_workers) WHERE json_each.value = :worker_name)"
)
_GENERAL_SCOPE = "json_array_length(s.dedicated_workers) = 0"

_CLAIM_QUERY = """
UPDATE request_attempt
SET picked_at = :now, worker_name = :worker_name, worker_version = :worker_version
WHERE request_attempt_id = (
    SELECT ra.request_attempt_id
    FROM request_attempt AS ra
    JOIN subscription AS s ON s.subscription_id = ra.subscription_id
    WHERE ra.picked_at IS NULL
      AND ra.succeeded_at IS NULL
      AND ra.failed_at IS NULL
      AND (ra.delay_until IS NULL OR ra.delay_until <= :now)
      AND s.is_enabled = 1
      AND {scope}
    ORDER BY COALESCE(ra.delay_until, ra.created_at), ra.created_at
    LIMIT 1
)
AND picked_at IS NULL
RETURNING *
"""


@dataclass(frozen=True)
class ClaimedAttempt:
    """An attempt held by a worker, with what it needs to execute it.

    Attributes:
        attempt: The attempt as claimed (picked_at and worker_name set).
        event: Event to deliver.
        subscription: Subscription to deliver to.
    """

    attempt: RequestAttempt
    event: Event
    subscription: Subscription


class AttemptMixin:
    """Mixin providing request attempt and response persistence.

    This mixin expects the following attributes/methods from the base class:
    - transaction(write=True) -> async context manager yielding a connection
    - _row_to_attempt(row) -> RequestAttempt
    - _response_to_row(response) / _row_to_response(row)
    - get_event / get_subscription from the other mixins
    """

    # These will be provided by the base class
    transaction: Any
    _row_to_attempt: Any
    _response_to_row: Any
    _row_to_response: Any
    get_event: Any
    get_subscription: Any

    async def insert_attempt(self, attempt: RequestAttempt, dispatch_key: str) -> bool:
        """Create a request attempt unless one with the same dispatch key exists.

        Args:
            attempt: Attempt to create.
            dispatch_key: Idempotency key, e.g. "{event_id}:{subscription_id}:initial".

        Returns:
            True if created, False if the key was already used.
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO request_attempt (
                    request_attempt_id, application_id, event_id, subscription_id,
                    dispatch_key, created_at, retry_count, delay_until
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(attempt.request_attempt_id),
                    str(attempt.application_id),
                    str(attempt.event_id),
                    str(attempt.subscription_id),
                    dispatch_key,
                    to_db_time(attempt.created_at),
                    attempt.retry_count,
                    to_db_time(attempt.delay_until),
                ),
            )
            return cursor.rowcount == 1

    async def get_attempt(
        self,
        request_attempt_id: UUID,
        application_id: UUID | None = None,
    ) -> RequestAttempt | None:
        """Get a request attempt by ID, optionally scoped to an application."""
        query = "SELECT * FROM request_attempt WHERE request_attempt_id = ?"
        params: list[str] = [str(request_attempt_id)]
        if application_id is not None:
            query += " AND application_id = ?"
            params.append(str(application_id))
        async with self.transaction(write=False) as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return self._row_to_attempt(row) if row is not None else None

    async def get_attempt_by_dispatch_key(self, dispatch_key: str) -> RequestAttempt | None:
        """Get the attempt created under an idempotency key."""
        async with self.transaction(write=False) as conn:
            async with conn.execute(
                "SELECT * FROM request_attempt WHERE dispatch_key = ?", (dispatch_key,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_attempt(row) if row is not None else None

    async def find_open_attempt(
        self,
        event_id: UUID,
        subscription_id: UUID,
    ) -> RequestAttempt | None:
        """Get the non-terminal attempt of an (event, subscription) pair, if any."""
        async with self.transaction(write=False) as conn:
            async with conn.execute(
                f"""
                SELECT * FROM request_attempt
                WHERE event_id = ? AND subscription_id = ? AND {_OPEN}
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (str(event_id), str(subscription_id)),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_attempt(row) if row is not None else None

    async def list_attempts(
        self,
        application_id: UUID,
        *,
        now: datetime,
        event_id: UUID | None = None,
        subscription_id: UUID | None = None,
        status: AttemptStatus | None = None,
        min_created_at: datetime | None = None,
        max_created_at: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RequestAttempt]:
        """List an application's request attempts, newest first.

        Args:
            application_id: Tenant scope.
            now: Reference time for the waiting/pending distinction.
            event_id: Only attempts of this event.
            subscription_id: Only attempts of this subscription.
            status: Only attempts in this status.
            min_created_at: Only attempts created at or after this time.
            max_created_at: Only attempts created before this time.
            limit: Maximum number of attempts to return.
            offset: Number of attempts to skip.
        """
        clauses = ["application_id = :application_id"]
        params: dict[str, Any] = {
            "application_id": str(application_id),
            "now": to_db_time(now),
            "limit": limit,
            "offset": offset,
        }
        if event_id is not None:
            clauses.append("event_id = :event_id")
            params["event_id"] = str(event_id)
        if subscription_id is not None:
            clauses.append("subscription_id = :subscription_id")
            params["subscription_id"] = str(subscription_id)
        if status is not None:
            clauses.append(_STATUS_FILTERS[status])
        if min_created_at is not None:
            clauses.append("created_at >= :min_created_at")
            params["min_created_at"] = to_db_time(min_created_at)
        if max_created_at is not None:
            clauses.append("created_at < :max_created_at")
            params["max_created_at"] = to_db_time(max_created_at)

        query = (
            f"SELECT * FROM request_attempt WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, request_attempt_id LIMIT :limit OFFSET :offset"
        )
        async with self.transaction(write=False) as conn:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_attempt(row) for row in rows]

    async def claim_next_attempt(
        self,
        worker_name: str,
        worker_version: str,
        *,
        now: datetime,
        dedicated: bool = False,
    ) -> ClaimedAttempt | None:
        """Atomically claim the next due attempt.

        Only attempts that are due, unpicked, not terminal, and belong to an
        enabled subscription in this worker's scope are eligible.

        Args:
            worker_name: Name recorded on the attempt.
            worker_version: Version recorded on the attempt.
            now: Claim time, recorded as picked_at.
            dedicated: Whether the worker serves dedicated subscriptions.

        Returns:
            The claimed attempt with its event and subscription, or None if
            nothing is claimable.
        """
        query = _CLAIM_QUERY.format(scope=_DEDICATED_SCOPE if dedicated else _GENERAL_SCOPE)
        params = {
            "now": to_db_time(now),
            "worker_name": worker_name,
            "worker_version": worker_version,
        }
        async with self.transaction() as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            attempt = self._row_to_attempt(row)
            return await self._load_claim(attempt)

    async def find_stale_attempts(
        self,
        picked_before: datetime,
        limit: int = 100,
    ) -> list[ClaimedAttempt]:
        """List claims older than picked_before that were never finalized."""
        async with self.transaction(write=False) as conn:
            async with conn.execute(
                f"""
                SELECT * FROM request_attempt
                WHERE picked_at IS NOT NULL AND picked_at < ? AND {_OPEN}
                ORDER BY picked_at
                LIMIT ?
                """,
                (to_db_time(picked_before), limit),
            ) as cursor:
                rows = await cursor.fetchall()
            return [await self._load_claim(self._row_to_attempt(row)) for row in rows]

    async def _load_claim(self, attempt: RequestAttempt) -> ClaimedAttempt:
        event = await self.get_event(attempt.event_id)
        subscription = await self.get_subscription(attempt.subscription_id)
        if event is None or subscription is None:
            raise LookupError(f"Attempt {attempt.request_attempt_id} references missing rows")
        return ClaimedAttempt(attempt=attempt, event=event, subscription=subscription)

    async def finalize_attempt(
        self,
        claimed: RequestAttempt,
        response: Response,
        *,
        now: datetime,
        retry_at: datetime | None = None,
    ) -> bool:
        """Record the outcome of one execution.

        Inserts the response and, in the same transaction, either marks the
        attempt succeeded, reschedules it (retry_count + 1, delay_until set,
        claim and worker fields cleared), or marks it failed. Nothing is
        written if the claim is no longer held, e.g. because it was reaped
        as stale.

        Args:
            claimed: The attempt as it was claimed.
            response: Outcome of the execution.
            now: Finalization time.
            retry_at: When to retry a failed execution; None gives up.

        Returns:
            True if recorded, False if the claim was lost.
        """
        if claimed.picked_at is None:
            raise ValueError("Only a claimed attempt can be finalized")

        if response.is_success:
            assignment = "succeeded_at = :now"
        elif retry_at is not None:
            assignment = (
                "retry_count = retry_count + 1, delay_until = :retry_at, "
                "picked_at = NULL, worker_name = NULL, worker_version = NULL"
            )
        else:
            assignment = "failed_at = :now"

        params = {
            "now": to_db_time(now),
            "retry_at": to_db_time(retry_at),
            "response_id": str(response.response_id),
            "request_attempt_id": str(claimed.request_attempt_id),
            "picked_at": to_db_time(claimed.picked_at),
            "worker_name": claimed.worker_name,
        }
        async with self.transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE request_attempt
                SET {assignment}, response_id = :response_id
                WHERE request_attempt_id = :request_attempt_id
                  AND picked_at = :picked_at
                  AND worker_name IS :worker_name
                  AND {_OPEN}
                """,
                params,
            )
            if cursor.rowcount != 1:
                logger.warning(
                    "Claim lost before finalization",
                    request_attempt_id=str(claimed.request_attempt_id),
                )
                return False
            await conn.execute(
                """
                INSERT INTO response (
                    response_id, request_attempt_id, application_id, response_error_name,
                    http_code, headers, body, elapsed_time_ms, created_at
                ) VALUES (
                    :response_id, :request_attempt_id, :application_id, :response_error_name,
                    :http_code, :headers, :body, :elapsed_time_ms, :created_at
                )
                """,
                self._response_to_row(response),
            )
        return True

    async def get_response(
        self,
        response_id: UUID,
        application_id: UUID | None = None,
    ) -> Response | None:
        """Get a response by ID, optionally scoped to an application."""
        query = "SELECT * FROM response WHERE response_id = ?"
        params: list[str] = [str(response_id)]
        if application_id is not None:
            query += " AND application_id = ?"
            params.append(str(application_id))
        async with self.transaction(write=False) as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return self._row_to_response(row) if row is not None else None

    async def list_responses(self, request_attempt_id: UUID) -> list[Response]:
        """List every response recorded for an attempt, oldest first."""
        async with self.transaction(write=False) as conn:
            async with conn.execute(
                "SELECT * FROM response WHERE request_attempt_id = ? ORDER BY created_at, rowid",
                (str(request_attempt_id),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_response(row) for row in rows]
