"""Metric definitions for realtime fan-out and presence handling."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events published to or received from the messaging service.",
    label_names=("topic", "direction", "action"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Number of realtime publish attempts that failed.",
    label_names=("topic", "reason"),
)

realtime_subscriptions = registry.gauge(
    "realtime_pubsub_subscriptions",
    "Number of active broker subscriptions held by the server.",
    label_names=("topic",),
)

presence_events_total = registry.counter(
    "presence_events_total",
    "Presence events processed by the server, by outcome.",
    label_names=("action", "outcome"),
)

roster_broadcasts_total = registry.counter(
    "roster_broadcasts_total",
    "Roster snapshots published to the users channel, by outcome.",
    label_names=("outcome",),
)

roster_requests_coalesced_total = registry.counter(
    "roster_requests_coalesced_total",
    "Roster broadcast triggers folded into an already scheduled broadcast.",
)

messages_persisted_total = registry.counter(
    "messages_persisted_total",
    "Chat messages persisted by the server.",
    label_names=("kind",),
)
