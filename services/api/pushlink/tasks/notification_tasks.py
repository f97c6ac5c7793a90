"""Celery tasks for push notifications."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from celery import shared_task
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pushlink.config import get_settings
from pushlink.models.delivery_log import DeliveryLog
from pushlink.services.notification_service import NotifyResult, get_notification_service
from pushlink.services.token_store import TokenStore

logger = logging.getLogger(__name__)


def _get_async_session() -> async_sessionmaker:
    # NullPool: each task runs in its own event loop via asyncio.run
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False, poolclass=NullPool)
    return async_sessionmaker(engine, expire_on_commit=False)


def _summarize(result: NotifyResult) -> dict[str, Any]:
    return {
        "status": result.status.value,
        "delivered": result.delivered,
        "invalid_recipients": result.invalid_recipients,
        "deferred": result.deferred,
        "retryable_addresses": result.retryable_addresses,
        "error": result.error,
    }


async def _notify(
    user_id: str,
    title: str,
    body: str,
    deep_link: str | None,
    extra_data: dict[str, Any] | None,
    only_addresses: list[str] | None,
) -> dict[str, Any]:
    settings = get_settings()
    service = get_notification_service(settings)
    session_factory = _get_async_session()
    async with session_factory() as db:
        result = await service.notify(
            db,
            user_id=user_id,
            title=title,
            body=body,
            deep_link=deep_link,
            extra_data=extra_data,
            only_addresses=only_addresses,
        )
        await db.commit()
    return _summarize(result)


@shared_task(
    bind=True,
    max_retries=None,
    name="pushlink.tasks.notification_tasks.send_notification",
)
def send_notification(
    self,
    user_id: str,
    title: str,
    body: str,
    deep_link: str | None = None,
    extra_data: dict[str, Any] | None = None,
    only_addresses: list[str] | None = None,
):
    """Notify a user about an application event.

    Deferred recipients are re-queued (only them) with exponential delay, up to
    ``notify_max_requeues`` times. After that the summary is returned as is.
    """
    settings = get_settings()
    summary = asyncio.run(_notify(user_id, title, body, deep_link, extra_data, only_addresses))

    retryable = summary["retryable_addresses"]
    if retryable and self.request.retries < settings.notify_max_requeues:
        countdown = settings.notify_requeue_base_delay_seconds * (2 ** self.request.retries)
        logger.info(
            "Re-queueing %d deferred recipient(s) for user %s in %ds (requeue %d/%d)",
            len(retryable),
            user_id,
            countdown,
            self.request.retries + 1,
            settings.notify_max_requeues,
        )
        raise self.retry(
            args=[],
            kwargs={
                "user_id": user_id,
                "title": title,
                "body": body,
                "deep_link": deep_link,
                "extra_data": extra_data,
                "only_addresses": retryable,
            },
            countdown=countdown,
        )

    if retryable:
        logger.warning(
            "Giving up on %d deferred recipient(s) for user %s after %d requeues",
            len(retryable),
            user_id,
            self.request.retries,
        )
    return summary


async def _check_receipts() -> int:
    settings = get_settings()
    service = get_notification_service(settings)
    sent_before = datetime.now(timezone.utc) - timedelta(minutes=settings.receipt_check_delay_minutes)
    session_factory = _get_async_session()
    async with session_factory() as db:
        invalidated = await service.check_pending_receipts(db, sent_before=sent_before)
        await db.commit()
    return invalidated


@shared_task(name="pushlink.tasks.notification_tasks.check_delivery_receipts")
def check_delivery_receipts():
    """Reconcile late provider receipts into token state."""
    invalidated = asyncio.run(_check_receipts())
    logger.info("Receipt check invalidated %d device token(s)", invalidated)
    return invalidated


async def _purge(cutoff: datetime) -> int:
    session_factory = _get_async_session()
    async with session_factory() as db:
        try:
            purged = await TokenStore(db).purge_invalid(older_than=cutoff)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return purged


@shared_task(name="pushlink.tasks.notification_tasks.purge_invalid_device_tokens")
def purge_invalid_device_tokens():
    """Delete device tokens that have been invalid for longer than the retention window."""
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.invalid_token_retention_days)
    purged = asyncio.run(_purge(cutoff))
    logger.info("Purged %d invalid device tokens older than %s", purged, cutoff.isoformat())
    return purged


async def _purge_delivery_log(cutoff: datetime) -> int:
    session_factory = _get_async_session()
    async with session_factory() as db:
        try:
            result = await db.execute(delete(DeliveryLog).where(DeliveryLog.created_at < cutoff))
            purged = result.rowcount
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return purged


@shared_task(name="pushlink.tasks.notification_tasks.purge_delivery_log")
def purge_delivery_log():
    """Delete delivery log rows older than the retention window."""
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.delivery_log_retention_days)
    purged = asyncio.run(_purge_delivery_log(cutoff))
    logger.info("Purged %d delivery log rows older than %s", purged, cutoff.isoformat())
    return purged
