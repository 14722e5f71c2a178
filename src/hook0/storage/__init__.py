"""Attempt Store for Hook0.

This module provides the storage layer persisting events, subscriptions,
request attempts and responses to SQLite, with an atomic claim so that
several workers can share one database.

Example:
    ```python
    from hook0.storage import Hook0Storage

    async with Hook0Storage() as storage:
        claim = await storage.claim_next_attempt("default", "0.1.0", now=utc_now())
    ```
"""

from .attempts import ClaimedAttempt
from .base import from_db_time, to_db_time
from .client import AttemptStats, Hook0Storage
from .retry import store_retry

__all__ = [
    "AttemptStats",
    "ClaimedAttempt",
    "Hook0Storage",
    "from_db_time",
    "store_retry",
    "to_db_time",
]
