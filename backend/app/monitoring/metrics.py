"""Metric definitions for the realtime relay."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of websocket sessions registered on this node.",
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events handled by the relay.",
    label_names=("event", "direction"),
)

realtime_rejected_events_total = registry.counter(
    "realtime_rejected_events_total",
    "Inbound realtime events rejected before broadcast.",
    label_names=("event", "reason"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Failures while publishing room broadcasts to the cross-node transport.",
    label_names=("kind",),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of times the Redis transport was reconnected.",
    label_names=("reason",),
)

presence_write_failures_total = registry.counter(
    "presence_write_failures_total",
    "Presence updates that could not be persisted.",
    label_names=("state",),
)
