"""Prometheus counters for the synchronization engine."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

MERGED_MESSAGES = Counter(
    "chat_merged_messages_total",
    "Messages merged into conversation stores by source",
    ["source"],
    registry=CUSTOM_REGISTRY,
)
SENDS = Counter("chat_sends_total", "Optimistic sends started", registry=CUSTOM_REGISTRY)
SEND_FAILURES = Counter(
    "chat_send_failures_total", "Sends that ended in the failed state", registry=CUSTOM_REGISTRY
)
POLL_FAILURES = Counter(
    "chat_poll_failures_total", "History fetches that raised", registry=CUSTOM_REGISTRY
)
PUSH_EVENTS = Counter(
    "chat_push_events_total", "Push events accepted for an active conversation", registry=CUSTOM_REGISTRY
)

# Local API traffic
REQUESTS = Counter("requests_total", "Total requests by endpoint", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total errors by endpoint", registry=CUSTOM_REGISTRY)
