"""Hook0: webhook delivery and retry engine.

Turns stored events into signed HTTP deliveries to matching subscriptions,
with at-least-once delivery, retries with backoff and a durable history of
every attempt.

Quick Start:
    from hook0.service import Hook0Service

    async with Hook0Service.create() as hook0:
        # Fan an event out to matching subscriptions
        attempts = await hook0.ingest_event(event)

        # Deliver due attempts until stopped
        await hook0.worker_pool().run()

Records:
    - Event: Immutable fact with a type, opaque payload and labels
    - Subscription: Consumer registration with a label filter and a target
    - RequestAttempt: Delivery chain of one (event, subscription) pair
    - Response: Outcome of one execution of an attempt
"""

__version__ = "0.1.0"

# Configuration
from .config import RetrySettings, Settings, WorkerSettings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    Hook0Error,
    NotFoundError,
    SignatureError,
    StorageError,
    StoreUnavailableError,
    ValidationError,
)

# Logging
from .logging import (
    attempt_context,
    bind_context,
    bind_worker_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    AttemptStatus,
    Event,
    RequestAttempt,
    Response,
    ResponseError,
    RetrySchedule,
    Subscription,
    Target,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "RetrySettings",
    "WorkerSettings",
    "settings",
    # Exceptions
    "Hook0Error",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "StoreUnavailableError",
    "SignatureError",
    "ConfigurationError",
    # Logging
    "configure_logging",
    "get_logger",
    "attempt_context",
    "bind_context",
    "bind_worker_context",
    "clear_context",
    "unbind_context",
    # Models
    "AttemptStatus",
    "Event",
    "RequestAttempt",
    "Response",
    "ResponseError",
    "RetrySchedule",
    "Subscription",
    "Target",
]
