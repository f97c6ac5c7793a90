"""Device registration and notification fan-out with receipt reconciliation."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pushlink.config import Settings
from pushlink.errors import PushlinkError, ValidationError
from pushlink.metrics import device_registrations_total, notifications_total, tokens_invalidated_total
from pushlink.models.base import utcnow
from pushlink.models.delivery_log import DeliveryLog
from pushlink.models.device_token import DeviceToken, InvalidReason, TokenPlatform
from pushlink.services.dispatch_client import (
    DeliveryOutcome,
    DeliveryReceipt,
    DispatchClient,
    NotificationRequest,
    PushMessage,
    get_dispatch_client,
)
from pushlink.services.token_store import TokenStore, mask_address

logger = logging.getLogger(__name__)

DEEP_LINK_KEY = "url"
MAX_TITLE_LENGTH = 255


class AttemptState(str, Enum):
    BUILT = "built"
    SENT = "sent"
    DELIVERED = "delivered"
    INVALID_RECIPIENT = "invalid_recipient"
    DEFERRED = "deferred"


_TRANSITIONS: dict[AttemptState, set[AttemptState]] = {
    AttemptState.BUILT: {AttemptState.SENT},
    AttemptState.SENT: {
        AttemptState.DELIVERED,
        AttemptState.INVALID_RECIPIENT,
        AttemptState.DEFERRED,
    },
}

_STATE_FOR_OUTCOME = {
    DeliveryOutcome.OK: AttemptState.DELIVERED,
    DeliveryOutcome.INVALID_ADDRESS: AttemptState.INVALID_RECIPIENT,
    DeliveryOutcome.RATE_LIMITED: AttemptState.DEFERRED,
    DeliveryOutcome.TRANSIENT_ERROR: AttemptState.DEFERRED,
}


@dataclass
class NotificationAttempt:
    """One notification to one device token.

    Token identity is copied at build time so results stay readable after the
    session rolls back.
    """

    token_id: uuid.UUID
    platform: TokenPlatform
    message: PushMessage
    state: AttemptState = AttemptState.BUILT
    receipt: DeliveryReceipt | None = None

    @property
    def address(self) -> str:
        return self.message.address

    @property
    def retryable(self) -> bool:
        return self.state == AttemptState.DEFERRED

    def _advance(self, new_state: AttemptState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal attempt transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def mark_sent(self) -> None:
        self._advance(AttemptState.SENT)

    def resolve(self, receipt: DeliveryReceipt) -> None:
        if receipt.address != self.address:
            raise RuntimeError("Receipt does not belong to this attempt")
        self.receipt = receipt
        self._advance(_STATE_FOR_OUTCOME[receipt.outcome])


class NotifyStatus(str, Enum):
    SENT = "sent"
    NOOP = "noop"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class NotifyResult:
    status: NotifyStatus
    attempts: list[NotificationAttempt] = field(default_factory=list)
    error: str | None = None

    @property
    def outcomes(self) -> list[AttemptState]:
        return [a.state for a in self.attempts]

    @property
    def delivered(self) -> int:
        return sum(1 for a in self.attempts if a.state == AttemptState.DELIVERED)

    @property
    def invalid_recipients(self) -> int:
        return sum(1 for a in self.attempts if a.state == AttemptState.INVALID_RECIPIENT)

    @property
    def deferred(self) -> int:
        return sum(1 for a in self.attempts if a.state == AttemptState.DEFERRED)

    @property
    def retryable_addresses(self) -> list[str]:
        return [a.address for a in self.attempts if a.retryable]


class RegistrationStatus(str, Enum):
    REGISTERED = "registered"
    UNREGISTERED = "unregistered"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class RegistrationResult:
    status: RegistrationStatus
    token: DeviceToken | None = None
    error: str | None = None
    field: str | None = None


def validate_deep_link(deep_link: str, allowed_schemes: list[str]) -> str:
    """Deep links are absolute URIs whose scheme names the owning app."""
    if not deep_link or any(c.isspace() for c in deep_link):
        raise ValidationError("Deep link must be a non-empty URI without whitespace", field="deep_link")
    scheme = urlsplit(deep_link).scheme
    if not scheme:
        raise ValidationError("Deep link must be an absolute URI", field="deep_link")
    if allowed_schemes and scheme.lower() not in allowed_schemes:
        raise ValidationError(
            f"Deep link scheme {scheme!r} is not one of {', '.join(allowed_schemes)}",
            field="deep_link",
        )
    return deep_link


def build_payload(
    deep_link: str | None,
    extra_data: dict[str, Any] | None,
    allowed_schemes: list[str],
) -> dict[str, Any]:
    payload = dict(extra_data or {})
    if deep_link is not None:
        payload[DEEP_LINK_KEY] = validate_deep_link(deep_link, allowed_schemes)
    return payload


class NotificationService:
    """Front door for registrations and notify calls.

    Every public method returns a typed result; store and dispatch failures
    never propagate to the caller.
    """

    def __init__(self, dispatch_client: DispatchClient, settings: Settings) -> None:
        self._dispatch = dispatch_client
        self._deep_link_schemes = settings.allowed_deep_link_schemes
        self._receipt_window = timedelta(hours=settings.push_receipt_retention_hours)

    async def register_device(
        self,
        db: AsyncSession,
        user_id: str,
        platform: str | TokenPlatform,
        address: str,
    ) -> RegistrationResult:
        platform_label = getattr(platform, "value", platform)
        if platform_label not in {p.value for p in TokenPlatform}:
            platform_label = "invalid"
        try:
            token = await TokenStore(db).upsert(user_id, platform, address)
        except ValidationError as e:
            device_registrations_total.labels(platform=platform_label, result="rejected").inc()
            return RegistrationResult(RegistrationStatus.REJECTED, error=e.message, field=e.field)
        except (PushlinkError, SQLAlchemyError) as e:
            await db.rollback()
            device_registrations_total.labels(platform=platform_label, result="failed").inc()
            logger.error("Device registration failed for user %s: %s", user_id, e)
            return RegistrationResult(RegistrationStatus.FAILED, error="registration could not be stored")

        device_registrations_total.labels(platform=token.platform.value, result="registered").inc()
        return RegistrationResult(RegistrationStatus.REGISTERED, token=token)

    async def unregister_device(
        self,
        db: AsyncSession,
        user_id: str,
        address: str,
    ) -> RegistrationResult:
        try:
            removed = await TokenStore(db).deactivate(user_id, address)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Device unregistration failed for user %s: %s", user_id, e)
            return RegistrationResult(RegistrationStatus.FAILED, error="unregistration could not be stored")

        if not removed:
            return RegistrationResult(RegistrationStatus.NOT_FOUND)
        tokens_invalidated_total.labels(reason=InvalidReason.UNREGISTERED.value).inc()
        return RegistrationResult(RegistrationStatus.UNREGISTERED)

    async def notify(
        self,
        db: AsyncSession,
        user_id: str,
        title: str,
        body: str,
        deep_link: str | None = None,
        extra_data: dict[str, Any] | None = None,
        only_addresses: Iterable[str] | None = None,
    ) -> NotifyResult:
        """Send one notification to every live device of a user.

        ``only_addresses`` narrows the fan-out, e.g. to re-queue the deferred
        recipients of an earlier call. Deferred attempts are reported, not
        retried here.
        """
        try:
            if not title or len(title) > MAX_TITLE_LENGTH:
                raise ValidationError("Title must be 1-255 characters", field="title")
            payload = build_payload(deep_link, extra_data, self._deep_link_schemes)
        except ValidationError as e:
            notifications_total.labels(result=NotifyStatus.REJECTED.value).inc()
            return NotifyResult(NotifyStatus.REJECTED, error=e.message)

        store = TokenStore(db)
        try:
            tokens = await store.lookup_active(user_id)
        except SQLAlchemyError as e:
            await db.rollback()
            notifications_total.labels(result=NotifyStatus.FAILED.value).inc()
            logger.error("Token lookup failed for user %s: %s", user_id, e)
            return NotifyResult(NotifyStatus.FAILED, error="token lookup failed")

        if only_addresses is not None:
            wanted = set(only_addresses)
            tokens = [t for t in tokens if t.address in wanted]

        if not tokens:
            logger.debug("No live device tokens for user %s; nothing to send", user_id)
            notifications_total.labels(result=NotifyStatus.NOOP.value).inc()
            return NotifyResult(NotifyStatus.NOOP)

        request = NotificationRequest(
            recipient_user_id=user_id,
            title=title,
            body=body,
            payload=payload,
        )
        attempts = [
            NotificationAttempt(
                token_id=t.id,
                platform=t.platform,
                message=PushMessage(address=t.address, request=request),
            )
            for t in tokens
        ]

        try:
            async with db.begin_nested():
                await store.touch([a.token_id for a in attempts])
        except SQLAlchemyError as e:
            logger.warning("Could not record last_used_at for user %s: %s", user_id, e)

        for attempt in attempts:
            attempt.mark_sent()
        try:
            receipts = await self._dispatch.send([a.message for a in attempts])
        except Exception as e:
            logger.error("Dispatch failed for user %s: %s", user_id, e)
            receipts = []
        if len(receipts) != len(attempts):
            receipts = [
                DeliveryReceipt(a.address, DeliveryOutcome.TRANSIENT_ERROR, error="dispatch failed")
                for a in attempts
            ]
        for attempt, receipt in zip(attempts, receipts):
            attempt.resolve(receipt)

        result = NotifyResult(NotifyStatus.SENT, attempts=attempts)
        try:
            async with db.begin_nested():
                await self.reconcile_receipts(db, receipts)
                self._record_deliveries(db, user_id, deep_link, attempts)
                await db.flush()
        except SQLAlchemyError as e:
            logger.error("Receipt reconciliation failed for user %s: %s", user_id, e)
            result.error = "receipt reconciliation failed"

        logger.info(
            "Notified user %s: delivered=%d invalid=%d deferred=%d",
            user_id,
            result.delivered,
            result.invalid_recipients,
            result.deferred,
        )
        notifications_total.labels(result=NotifyStatus.SENT.value).inc()
        return result

    async def reconcile_receipts(
        self,
        db: AsyncSession,
        receipts: Iterable[DeliveryReceipt],
    ) -> None:
        """Fold receipts back into token state.

        invalid-address invalidates the token, rate-limited/transient-error
        flags it pending-retry, ok clears that flag.
        """
        store = TokenStore(db)
        delivered: list[str] = []
        deferred: list[str] = []
        for receipt in receipts:
            if receipt.outcome == DeliveryOutcome.INVALID_ADDRESS:
                invalidated = await store.mark_invalid(receipt.address, InvalidReason.PROVIDER_REJECTED)
                if invalidated:
                    tokens_invalidated_total.labels(reason=InvalidReason.PROVIDER_REJECTED.value).inc()
            elif receipt.outcome == DeliveryOutcome.OK:
                delivered.append(receipt.address)
            else:
                deferred.append(receipt.address)

        await store.restore_active(delivered)
        await store.mark_pending_retry(deferred)

    async def check_pending_receipts(
        self,
        db: AsyncSession,
        sent_before: datetime,
        limit: int = 1000,
    ) -> int:
        """Pull late provider receipts for accepted messages sent before ``sent_before``.

        Tickets older than the provider's receipt window that still have no
        receipt are closed out, so they stop occupying the polling batch.
        Returns the number of tokens invalidated.
        """
        result = await db.execute(
            select(DeliveryLog)
            .where(
                DeliveryLog.provider_message_id.isnot(None),
                DeliveryLog.receipt_checked_at.is_(None),
                DeliveryLog.outcome == DeliveryOutcome.OK.value,
                DeliveryLog.created_at < sent_before,
            )
            .order_by(DeliveryLog.created_at)
            .limit(limit)
        )
        entries = result.scalars().all()
        if not entries:
            return 0

        receipts = await self._dispatch.fetch_receipts(e.provider_message_id for e in entries)
        store = TokenStore(db)
        invalidated = 0
        now = utcnow()
        expired_before = now - self._receipt_window
        expired = 0
        for entry in entries:
            receipt = receipts.get(entry.provider_message_id)
            if receipt is None:
                if entry.created_at < expired_before:
                    entry.receipt_checked_at = now
                    entry.error = "receipt expired"
                    expired += 1
                continue
            entry.receipt_checked_at = now
            if receipt.outcome != DeliveryOutcome.OK:
                entry.error = receipt.error
            if receipt.outcome == DeliveryOutcome.INVALID_ADDRESS:
                count = await store.mark_invalid(entry.address, InvalidReason.PROVIDER_REJECTED)
                if count:
                    tokens_invalidated_total.labels(reason=InvalidReason.PROVIDER_REJECTED.value).inc()
                    logger.info("Late receipt invalidated address=%s", mask_address(entry.address))
                invalidated += count
        if expired:
            logger.warning("Closed out %d ticket(s) whose receipts expired unanswered", expired)
        await db.flush()
        return invalidated

    @staticmethod
    def _record_deliveries(
        db: AsyncSession,
        user_id: str,
        deep_link: str | None,
        attempts: list[NotificationAttempt],
    ) -> None:
        db.add_all(
            [
                DeliveryLog(
                    user_id=user_id,
                    token_id=a.token_id,
                    address=a.address,
                    title=a.message.request.title,
                    deep_link=deep_link,
                    outcome=a.receipt.outcome.value,
                    provider_message_id=a.receipt.provider_message_id,
                    error=a.receipt.error,
                )
                for a in attempts
            ]
        )


def get_notification_service(settings: Settings) -> NotificationService:
    """Factory that wires up a NotificationService with its dispatch client."""
    return NotificationService(
        dispatch_client=get_dispatch_client(settings),
        settings=settings,
    )
