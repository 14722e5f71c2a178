"""Retry utilities for storage operations.

Provides exponential backoff retry logic for transient lock contention
on the SQLite database shared by API processes and output workers.
"""

from __future__ import annotations

import logging
import sqlite3

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

_TRANSIENT_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def is_transient(exc: BaseException) -> bool:
    """Whether a database error is worth retrying."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(m in message for m in _TRANSIENT_MESSAGES)


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context.

    Args:
        retry_state: Current retry state from tenacity.
    """
    if retry_state.attempt_number > 1:
        logger.warning(
            "Retrying store operation",
            extra={
                "attempt": retry_state.attempt_number,
                "fn_name": retry_state.fn.__name__ if retry_state.fn else "unknown",
                "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
            },
        )


# Decorator for retrying transient SQLite errors
# Constraint violations and other errors are not retried
store_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception(is_transient),
    before_sleep=_log_retry,
    reraise=True,
)
