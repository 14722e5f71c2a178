"""Label matching between events and subscriptions.

A subscription receives an event when it is enabled, lists the event's type,
and its label filter (one key/value pair) is present with the exact same
value among the event's labels. There are no wildcards or patterns.
"""

from __future__ import annotations

from collections.abc import Iterable

from hook0.models import Event, Subscription


def matches(event: Event, subscription: Subscription) -> bool:
    """Check whether a subscription should receive an event."""
    return (
        subscription.is_enabled
        and event.event_type in subscription.event_types
        and event.labels.get(subscription.label_key) == subscription.label_value
    )


def matching_subscriptions(
    event: Event, subscriptions: Iterable[Subscription]
) -> list[Subscription]:
    """Filter subscriptions down to those matching the event."""
    return [
        s
        for s in subscriptions
        if s.application_id == event.application_id and matches(event, s)
    ]


def explain(event: Event, subscription: Subscription) -> str | None:
    """Explain why a subscription does not match an event.

    Useful for dry-run and debugging tools.

    Returns:
        None if the subscription matches, otherwise the first failing criterion.
    """
    if not subscription.is_enabled:
        return "subscription is disabled"
    if event.event_type not in subscription.event_types:
        return f"event type {event.event_type!r} is not subscribed"
    if subscription.label_key not in event.labels:
        return f"event has no label {subscription.label_key!r}"
    actual = event.labels[subscription.label_key]
    if actual != subscription.label_value:
        return (
            f"label {subscription.label_key!r} is {actual!r}, "
            f"expected {subscription.label_value!r}"
        )
    return None
