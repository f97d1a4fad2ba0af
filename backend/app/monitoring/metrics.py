"""Metric definitions for the realtime core."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of websocket connections held by this process.",
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Events pushed to users, by event name and outcome (delivered, offline, failed, relayed).",
    label_names=("event", "outcome"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Failures while relaying events to other nodes.",
    label_names=("reason",),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Recoveries of the cross-node relay transport.",
    label_names=("backend", "reason"),
)

presence_store_errors_total = registry.counter(
    "presence_store_errors_total",
    "Shared store failures observed by the presence registry.",
    label_names=("operation",),
)

call_transitions_total = registry.counter(
    "call_transitions_total",
    "Call signaling state transitions.",
    label_names=("state",),
)
