"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_success

from pushlink.config import get_settings
from pushlink.metrics import celery_task_total

settings = get_settings()

celery_app = Celery(
    "pushlink",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "pushlink.tasks.notification_tasks.send_notification": {"queue": "notifications"},
        "pushlink.tasks.notification_tasks.*": {"queue": "default"},
    },
    beat_schedule={
        # Late provider receipts: every 15 min
        "check-delivery-receipts": {
            "task": "pushlink.tasks.notification_tasks.check_delivery_receipts",
            "schedule": crontab(minute="*/15"),
        },
        # Purge long-invalid device tokens: daily at 3 AM UTC
        "purge-invalid-device-tokens": {
            "task": "pushlink.tasks.notification_tasks.purge_invalid_device_tokens",
            "schedule": crontab(hour=3, minute=0),
        },
        # Delivery log retention: daily at 3:30 AM UTC
        "purge-delivery-log": {
            "task": "pushlink.tasks.notification_tasks.purge_delivery_log",
            "schedule": crontab(hour=3, minute=30),
        },
    },
)

celery_app.autodiscover_tasks(["pushlink.tasks"], related_name="notification_tasks")


@task_success.connect
def _count_success(sender=None, **kwargs):
    celery_task_total.labels(task_name=sender.name, status="success").inc()


@task_failure.connect
def _count_failure(sender=None, **kwargs):
    celery_task_total.labels(task_name=sender.name, status="failure").inc()
