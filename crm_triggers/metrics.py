from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


opportunity_trigger_invocations_total = Counter(
    "opportunity_trigger_invocations_total",
    "Total opportunity trigger invocations by phase and outcome",
    ["phase", "status"],
)

opportunity_trigger_duration_seconds = Histogram(
    "opportunity_trigger_duration_seconds",
    "Opportunity trigger duration in seconds",
    ["phase"],
)

opportunity_trigger_batch_size = Histogram(
    "opportunity_trigger_batch_size",
    "Records per opportunity trigger invocation",
    ["phase"],
    buckets=(1, 5, 10, 50, 100, 200, 500, 1000),
)

opportunity_validation_rejections_total = Counter(
    "opportunity_validation_rejections_total",
    "Total opportunity records rejected by validation rules",
    ["rule"],
)

opportunity_tasks_created_total = Counter(
    "opportunity_tasks_created_total",
    "Total follow-up tasks created for inserted opportunities",
)

opportunity_notifications_total = Counter(
    "opportunity_notifications_total",
    "Total opportunity notification messages by delivery status",
    ["status"],
)


def observe_trigger(phase: str, status: str, batch_size: int, duration: float) -> None:
    opportunity_trigger_invocations_total.labels(phase=phase, status=status).inc()
    opportunity_trigger_duration_seconds.labels(phase=phase).observe(duration)
    opportunity_trigger_batch_size.labels(phase=phase).observe(batch_size)


def observe_validation_rejection(rule: str, count: int = 1) -> None:
    if count > 0:
        opportunity_validation_rejections_total.labels(rule=rule).inc(count)


def observe_tasks_created(count: int) -> None:
    if count > 0:
        opportunity_tasks_created_total.inc(count)


def observe_notifications(status: str, count: int = 1) -> None:
    if count > 0:
        opportunity_notifications_total.labels(status=status).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
