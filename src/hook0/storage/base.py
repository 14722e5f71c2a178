"""Base storage class and helpers.

Contains connection management, the schema, transactions, and the
conversions between models and SQLite rows.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import UUID

import aiosqlite

from hook0.config import settings
from hook0.exceptions import StorageError, StoreUnavailableError
from hook0.logging import get_logger
from hook0.models import Event, RequestAttempt, Response, ResponseError, Subscription

from .retry import store_retry

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MICROSECOND = timedelta(microseconds=1)

SCHEMA = """
CREATE TABLE IF NOT EXISTS event (
    event_id TEXT PRIMARY KEY,
    application_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload BLOB NOT NULL,
    payload_content_type TEXT NOT NULL,
    labels TEXT NOT NULL,
    occurred_at INTEGER NOT NULL,
    received_at INTEGER NOT NULL,
    dispatched_at INTEGER
);
CREATE INDEX IF NOT EXISTS idx_event_undispatched
    ON event(received_at) WHERE dispatched_at IS NULL;

CREATE TABLE IF NOT EXISTS subscription (
    subscription_id TEXT PRIMARY KEY,
    application_id TEXT NOT NULL,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    event_types TEXT NOT NULL,
    label_key TEXT NOT NULL,
    label_value TEXT NOT NULL,
    target_method TEXT NOT NULL,
    target_url TEXT NOT NULL,
    target_headers TEXT NOT NULL DEFAULT '{}',
    secret TEXT NOT NULL,
    dedicated_workers TEXT NOT NULL DEFAULT '[]',
    retry_schedule TEXT,
    description TEXT,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_subscription_application
    ON subscription(application_id, is_enabled);

CREATE TABLE IF NOT EXISTS response (
    response_id TEXT PRIMARY KEY,
    request_attempt_id TEXT NOT NULL REFERENCES request_attempt(request_attempt_id),
    application_id TEXT NOT NULL,
    response_error_name TEXT CHECK (response_error_name IN
        ('E_CONNECTION', 'E_TIMEOUT', 'E_HTTP', 'E_INVALID_TARGET')),
    http_code INTEGER,
    headers TEXT,
    body TEXT,
    elapsed_time_ms INTEGER NOT NULL,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_response_attempt ON response(request_attempt_id);

CREATE TABLE IF NOT EXISTS request_attempt (
    request_attempt_id TEXT PRIMARY KEY,
    application_id TEXT NOT NULL,
    event_id TEXT NOT NULL REFERENCES event(event_id),
    subscription_id TEXT NOT NULL REFERENCES subscription(subscription_id),
    dispatch_key TEXT NOT NULL UNIQUE,
    created_at INTEGER NOT NULL,
    picked_at INTEGER,
    succeeded_at INTEGER,
    failed_at INTEGER,
    retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    delay_until INTEGER,
    worker_name TEXT,
    worker_version TEXT,
    response_id TEXT REFERENCES response(response_id) DEFERRABLE INITIALLY DEFERRED,
    CHECK (succeeded_at IS NULL OR failed_at IS NULL)
);
CREATE INDEX IF NOT EXISTS idx_request_attempt_claimable
    ON request_attempt(delay_until, created_at)
    WHERE picked_at IS NULL AND succeeded_at IS NULL AND failed_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_request_attempt_picked
    ON request_attempt(picked_at)
    WHERE picked_at IS NOT NULL AND succeeded_at IS NULL AND failed_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_request_attempt_application
    ON request_attempt(application_id, created_at);
CREATE INDEX IF NOT EXISTS idx_request_attempt_pair
    ON request_attempt(event_id, subscription_id);

CREATE TRIGGER IF NOT EXISTS request_attempt_terminal_immutable
BEFORE UPDATE ON request_attempt
WHEN OLD.succeeded_at IS NOT NULL OR OLD.failed_at IS NOT NULL
BEGIN
    SELECT RAISE(ABORT, 'request attempt is terminal');
END;

CREATE TRIGGER IF NOT EXISTS request_attempt_retry_count_monotonic
BEFORE UPDATE OF retry_count ON request_attempt
WHEN NEW.retry_count < OLD.retry_count
BEGIN
    SELECT RAISE(ABORT, 'retry_count cannot decrease');
END;

CREATE TRIGGER IF NOT EXISTS response_immutable
BEFORE UPDATE ON response
BEGIN
    SELECT RAISE(ABORT, 'responses are immutable');
END;
"""


def to_db_time(value: datetime | None) -> int | None:
    """Convert a datetime to integer microseconds since the epoch."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // _MICROSECOND


def from_db_time(value: int | None) -> datetime | None:
    """Convert integer microseconds since the epoch to an aware datetime."""
    if value is None:
        return None
    return _EPOCH + timedelta(microseconds=value)


def _uuid(value: str | None) -> UUID | None:
    return UUID(value) if value is not None else None


class StorageBase:
    """Base class for Hook0 storage with connection and transaction handling.

    Provides:
    - Connection lifecycle and schema creation
    - Task-reentrant transactions serialized per storage instance
    - Row to model conversions

    Several storage instances (or processes) may share the same database
    file; SQLite's write lock serializes their transactions.
    """

    def __init__(
        self,
        database_path: str | Path | None = None,
        busy_timeout_ms: int | None = None,
    ) -> None:
        """Initialize storage.

        Args:
            database_path: SQLite file. Defaults to settings.database_path.
            busy_timeout_ms: Lock wait. Defaults to settings.store_busy_timeout_ms.
        """
        self._database_path = str(database_path or settings.database_path)
        self._busy_timeout_ms = (
            busy_timeout_ms if busy_timeout_ms is not None else settings.store_busy_timeout_ms
        )
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._tx_owner: asyncio.Task[Any] | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get the database connection, raising if not initialized."""
        if self._conn is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._conn

    @property
    def database_path(self) -> str:
        """Path of the SQLite database file."""
        return self._database_path

    async def initialize(self) -> None:
        """Open the connection and ensure the schema exists."""
        if self._conn is not None:
            return
        try:
            self._conn = await self._connect()
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"Cannot open {self._database_path}: {e}") from e
        logger.debug("Storage initialized", database_path=self._database_path)

    @store_retry
    async def _connect(self) -> aiosqlite.Connection:
        if self._database_path != ":memory:":
            Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._database_path, isolation_level=None)
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.executescript(SCHEMA)
        except BaseException:
            await conn.close()
            raise
        return conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> StorageBase:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @asynccontextmanager
    async def transaction(self, write: bool = True) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements atomically.

        Nested calls from the same task join the outer transaction. Other
        tasks wait for it to finish. Database errors are translated to
        StorageError, or StoreUnavailableError when the database stays
        locked or cannot be reached.

        Args:
            write: Take the write lock up front (BEGIN IMMEDIATE).
        """
        current = asyncio.current_task()
        if current is not None and self._tx_owner is current:
            yield self.conn
            return

        async with self._lock:
            self._tx_owner = current
            try:
                conn = self.conn
                try:
                    await self._begin(conn, write)
                except sqlite3.Error as e:
                    raise _translate(e) from e
                try:
                    yield conn
                except BaseException:
                    await conn.rollback()
                    raise
                try:
                    await conn.commit()
                except sqlite3.Error as e:
                    await conn.rollback()
                    raise _translate(e) from e
            except sqlite3.Error as e:
                raise _translate(e) from e
            finally:
                self._tx_owner = None

    @store_retry
    async def _begin(self, conn: aiosqlite.Connection, write: bool) -> None:
        await conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")

    # Row conversions

    @staticmethod
    def _event_to_row(event: Event) -> dict[str, Any]:
        return {
            "event_id": str(event.event_id),
            "application_id": str(event.application_id),
            "event_type": event.event_type,
            "payload": event.payload,
            "payload_content_type": event.payload_content_type,
            "labels": json.dumps(event.labels, sort_keys=True),
            "occurred_at": to_db_time(event.occurred_at),
            "received_at": to_db_time(event.received_at),
            "dispatched_at": to_db_time(event.dispatched_at),
        }

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> Event:
        return Event(
            event_id=UUID(row["event_id"]),
            application_id=UUID(row["application_id"]),
            event_type=row["event_type"],
            payload=bytes(row["payload"]),
            payload_content_type=row["payload_content_type"],
            labels=json.loads(row["labels"]),
            occurred_at=from_db_time(row["occurred_at"]),
            received_at=from_db_time(row["received_at"]),
            dispatched_at=from_db_time(row["dispatched_at"]),
        )

    @staticmethod
    def _subscription_to_row(subscription: Subscription) -> dict[str, Any]:
        schedule = subscription.retry_schedule
        return {
            "subscription_id": str(subscription.subscription_id),
            "application_id": str(subscription.application_id),
            "is_enabled": int(subscription.is_enabled),
            "event_types": json.dumps(sorted(subscription.event_types)),
            "label_key": subscription.label_key,
            "label_value": subscription.label_value,
            "target_method": subscription.target.method,
            "target_url": subscription.target.url,
            "target_headers": json.dumps(subscription.target.headers),
            "secret": subscription.secret,
            "dedicated_workers": json.dumps(subscription.dedicated_workers),
            "retry_schedule": schedule.model_dump_json() if schedule is not None else None,
            "description": subscription.description,
            "created_at": to_db_time(subscription.created_at),
        }

    @staticmethod
    def _row_to_subscription(row: aiosqlite.Row) -> Subscription:
        schedule = row["retry_schedule"]
        return Subscription.model_validate(
            {
                "subscription_id": row["subscription_id"],
                "application_id": row["application_id"],
                "is_enabled": bool(row["is_enabled"]),
                "event_types": json.loads(row["event_types"]),
                "label_key": row["label_key"],
                "label_value": row["label_value"],
                "target": {
                    "method": row["target_method"],
                    "url": row["target_url"],
                    "headers": json.loads(row["target_headers"]),
                },
                "secret": row["secret"],
                "dedicated_workers": json.loads(row["dedicated_workers"]),
                "retry_schedule": json.loads(schedule) if schedule is not None else None,
                "description": row["description"],
                "created_at": from_db_time(row["created_at"]),
            }
        )

    @staticmethod
    def _row_to_attempt(row: aiosqlite.Row) -> RequestAttempt:
        return RequestAttempt(
            request_attempt_id=UUID(row["request_attempt_id"]),
            application_id=UUID(row["application_id"]),
            event_id=UUID(row["event_id"]),
            subscription_id=UUID(row["subscription_id"]),
            created_at=from_db_time(row["created_at"]),
            picked_at=from_db_time(row["picked_at"]),
            succeeded_at=from_db_time(row["succeeded_at"]),
            failed_at=from_db_time(row["failed_at"]),
            retry_count=row["retry_count"],
            delay_until=from_db_time(row["delay_until"]),
            worker_name=row["worker_name"],
            worker_version=row["worker_version"],
            response_id=_uuid(row["response_id"]),
        )

    @staticmethod
    def _response_to_row(response: Response) -> dict[str, Any]:
        error = response.response_error_name
        return {
            "response_id": str(response.response_id),
            "request_attempt_id": str(response.request_attempt_id),
            "application_id": str(response.application_id),
            "response_error_name": error.value if error is not None else None,
            "http_code": response.http_code,
            "headers": json.dumps(response.headers) if response.headers is not None else None,
            "body": response.body,
            "elapsed_time_ms": response.elapsed_time_ms,
            "created_at": to_db_time(response.created_at),
        }

    @staticmethod
    def _row_to_response(row: aiosqlite.Row) -> Response:
        error = row["response_error_name"]
        headers = row["headers"]
        return Response(
            response_id=UUID(row["response_id"]),
            request_attempt_id=UUID(row["request_attempt_id"]),
            application_id=UUID(row["application_id"]),
            response_error_name=ResponseError(error) if error is not None else None,
            http_code=row["http_code"],
            headers=json.loads(headers) if headers is not None else None,
            body=row["body"],
            elapsed_time_ms=row["elapsed_time_ms"],
            created_at=from_db_time(row["created_at"]),
        )


def _translate(exc: sqlite3.Error) -> StorageError:
    """Map a database error to the storage exception hierarchy."""
    if isinstance(exc, sqlite3.IntegrityError):
        return StorageError(str(exc))
    return StoreUnavailableError(str(exc))
