"""Prometheus metric definitions for Pushlink.

Single source of truth for all custom metrics. Import from here in API and Celery code.
"""

from prometheus_client import Counter, Histogram

# --- Celery task metrics ---

celery_task_total = Counter(
    "pushlink_celery_task_total",
    "Total Celery tasks executed",
    ["task_name", "status"],
)

# --- Registry metrics ---

device_registrations_total = Counter(
    "pushlink_device_registrations_total",
    "Device registration calls by platform and result",
    ["platform", "result"],
)

tokens_invalidated_total = Counter(
    "pushlink_tokens_invalidated_total",
    "Device tokens invalidated by reason",
    ["reason"],
)

# --- Dispatch metrics ---

push_batches_total = Counter(
    "pushlink_push_batches_total",
    "Provider batch calls by result",
    ["result"],
)

push_receipts_total = Counter(
    "pushlink_push_receipts_total",
    "Per-message delivery receipts by outcome",
    ["outcome"],
)

push_dispatch_duration_seconds = Histogram(
    "pushlink_push_dispatch_duration_seconds",
    "Wall time of one DispatchClient.send call, retries included",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

notifications_total = Counter(
    "pushlink_notifications_total",
    "notify() calls by result",
    ["result"],
)
