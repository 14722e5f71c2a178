"""Webhook delivery engine for Hook0.

Turns stored events into signed HTTP deliveries with retries.

Example:
    ```python
    from hook0.webhooks import Dispatcher, WorkerPool

    # Fan an ingested event out to matching subscriptions
    await Dispatcher(storage).on_event_ingested(event)

    # Deliver due attempts until stopped
    await WorkerPool(storage, settings.worker, settings.retry).run()
    ```
"""

from .delivery import DeliveryClient, InvalidTarget
from .dispatcher import Dispatcher, initial_dispatch_key
from .matcher import explain, matches, matching_subscriptions
from .replay import Replayer
from .retry import GiveUp, RetryAt, RetryDecision, RetryPolicy, backoff_delay
from .signature import Signature, sign, verify
from .worker import OutputWorker, WorkerPool

__all__ = [
    "DeliveryClient",
    "Dispatcher",
    "GiveUp",
    "InvalidTarget",
    "OutputWorker",
    "Replayer",
    "RetryAt",
    "RetryDecision",
    "RetryPolicy",
    "Signature",
    "WorkerPool",
    "backoff_delay",
    "explain",
    "initial_dispatch_key",
    "matches",
    "matching_subscriptions",
    "sign",
    "verify",
]
