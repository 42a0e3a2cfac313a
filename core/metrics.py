"""
Prometheus metrics shared by the POSTWATCH workers.
Expose with: start_metrics_server(port=9108)
"""
from prometheus_client import Counter, Histogram, start_http_server

# Queue settlements by queue and outcome (completed, abandoned, dead_lettered, lease_lost)
queue_settled_total = Counter(
    "postwatch_queue_settled_total",
    "Task-queue messages settled by the workers",
    ["queue", "outcome"],
)

# Messages handed to the queue by producers
queue_enqueued_total = Counter(
    "postwatch_queue_enqueued_total",
    "Task-queue messages enqueued",
    ["queue"],
)

# Events appended to the bus by action and media type
events_appended_total = Counter(
    "postwatch_events_appended_total",
    "Events appended to the event bus",
    ["action", "media_type"],
)

# Events dropped before reaching the bus (oversized, ...)
events_dropped_total = Counter(
    "postwatch_events_dropped_total",
    "Events dropped by the producer",
    ["reason"],
)

# Raw records routed to the dead-letter topic
events_dead_lettered_total = Counter(
    "postwatch_events_dead_lettered_total",
    "Event-bus records published to the dead-letter topic",
    ["reason"],
)

# Safety verdicts by media type and outcome
verdicts_total = Counter(
    "postwatch_verdicts_total",
    "Safety-analysis verdicts",
    ["media_type", "verdict"],
)

# Projections applied to the read store
projections_total = Counter(
    "postwatch_projections_total",
    "Events applied to the read store",
    ["action", "media_type"],
)

# Not-found retries taken on read-store patches
not_found_retries_total = Counter(
    "postwatch_not_found_retries_total",
    "Read-store patches retried because the target was missing",
    ["collection"],
)

# Wall-clock time spent handling one message
processing_seconds = Histogram(
    "postwatch_processing_seconds",
    "Seconds spent handling one message",
    ["worker"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)


def start_metrics_server(port: int = 9108) -> None:
    """Start Prometheus metrics HTTP server on the given port."""
    start_http_server(port)


def mark_settled(queue: str, outcome: str) -> None:
    """Increment the settlement counter for a queue and outcome."""
    queue_settled_total.labels(queue=queue, outcome=outcome).inc()


def mark_enqueued(queue: str) -> None:
    """Increment the enqueue counter for a queue."""
    queue_enqueued_total.labels(queue=queue).inc()


def mark_appended(action: str, media_type: str) -> None:
    """Increment the appended-event counter."""
    events_appended_total.labels(action=action, media_type=media_type).inc()


def mark_dropped(reason: str) -> None:
    """Increment the dropped-event counter with a specific drop reason."""
    events_dropped_total.labels(reason=reason).inc()


def mark_dead_lettered(reason: str) -> None:
    """Increment the dead-letter-topic counter with the routing reason."""
    events_dead_lettered_total.labels(reason=reason).inc()


def mark_verdict(media_type: str, approved: bool) -> None:
    """Record a safety verdict."""
    verdicts_total.labels(media_type=media_type, verdict="approved" if approved else "refused").inc()


def mark_projection(action: str, media_type: str) -> None:
    """Record an applied projection."""
    projections_total.labels(action=action, media_type=media_type).inc()


def mark_not_found_retry(collection: str) -> None:
    """Record one not-found retry against a read-store collection."""
    not_found_retries_total.labels(collection=collection).inc()
