"""
Prometheus metrics for the print-on-demand core.

Tracks:
- Design creations and deduplication
- Render job submissions, claims and terminal outcomes
- Order creations, amounts and state transitions
- Webhook events by outcome
- Rate limit decisions
- Render jobs reclaimed from workers that stopped reporting
"""
from prometheus_client import Counter, Gauge, Histogram

# Design metrics
designs_created_total = Counter(
    "designs_created_total",
    "Total design create requests",
    ["result"],  # created, deduplicated
)

# Render job metrics
render_jobs_submitted_total = Counter(
    "render_jobs_submitted_total",
    "Total render job submissions",
    ["result"],  # created, deduplicated, exhausted
)

render_jobs_finished_total = Counter(
    "render_jobs_finished_total",
    "Total render jobs reaching a terminal state",
    ["status"],  # completed, failed, cancelled
)

render_jobs_claimed_total = Counter(
    "render_jobs_claimed_total",
    "Total render jobs claimed by workers",
)

render_duration_seconds = Histogram(
    "render_duration_seconds",
    "Render duration as observed by the worker",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

render_retries_exhausted_total = Counter(
    "render_retries_exhausted_total",
    "Total designs that used up their automatic render attempts",
)

render_jobs_reclaimed_total = Counter(
    "render_jobs_reclaimed_total",
    "Total processing render jobs failed after their worker lease expired",
)

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total orders created",
)

order_amount = Histogram(
    "order_amount",
    "Order amounts in the minor currency unit",
    buckets=(500, 1000, 3000, 5000, 8000, 10000, 30000, 50000, 100000),
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order events by result",
    ["event", "result"],  # applied, rejected
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "outcome"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Rate limit metrics
rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Total rate limit decisions",
    ["action", "decision"],  # allowed, throttled
)

rate_limit_counters_purged_total = Counter(
    "rate_limit_counters_purged_total",
    "Total expired rate limit windows deleted",
)

# Worker metrics
worker_last_poll_timestamp = Gauge(
    "worker_last_poll_timestamp",
    "Timestamp of the worker's last poll",
    ["worker"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_design_created(created: bool) -> None:
        designs_created_total.labels(result="created" if created else "deduplicated").inc()

    @staticmethod
    def record_render_submission(result: str) -> None:
        """Record a render submission: created, deduplicated or exhausted."""
        render_jobs_submitted_total.labels(result=result).inc()

    @staticmethod
    def record_render_claimed() -> None:
        render_jobs_claimed_total.inc()

    @staticmethod
    def record_render_finished(status: str, exhausted: bool = False) -> None:
        """Record a render job reaching a terminal state."""
        render_jobs_finished_total.labels(status=status).inc()
        if exhausted:
            render_retries_exhausted_total.inc()

    @staticmethod
    def record_render_reclaimed(count: int, exhausted: int = 0) -> None:
        if count > 0:
            render_jobs_reclaimed_total.inc(count)
            render_jobs_finished_total.labels(status="failed").inc(count)
        if exhausted > 0:
            render_retries_exhausted_total.inc(exhausted)

    @staticmethod
    def record_render_duration(duration_seconds: float) -> None:
        render_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_created(amount: int) -> None:
        """Record an order creation and its frozen amount."""
        orders_created_total.inc()
        order_amount.observe(amount)

    @staticmethod
    def record_order_transition(event: str, applied: bool) -> None:
        order_transitions_total.labels(
            event=event, result="applied" if applied else "rejected"
        ).inc()

    @staticmethod
    def record_webhook_event(event_type: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_rate_limit(action: str, allowed: bool) -> None:
        rate_limit_decisions_total.labels(
            action=action, decision="allowed" if allowed else "throttled"
        ).inc()

    @staticmethod
    def record_rate_limit_purge(count: int) -> None:
        if count > 0:
            rate_limit_counters_purged_total.inc(count)

    @staticmethod
    def mark_worker_poll(worker: str) -> None:
        worker_last_poll_timestamp.labels(worker=worker).set_to_current_time()


# Export singleton instance
metrics = MetricsCollector()
