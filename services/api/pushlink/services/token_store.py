"""Durable device-token registry.

Owns the (user_id, platform) -> push address mapping. All writes go through
conditional statements so the "one live token per platform" invariant holds
under concurrent registrations from the same account:

* the partial unique index ``uq_device_tokens_live_slot`` rejects a second live
  row for a slot, and
* ``upsert`` never reads-then-writes. It inserts only if the slot is free and
  otherwise invalidates the exact occupant it compared against, retrying the
  insert afterwards.

No network I/O happens here.
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pushlink.errors import PushlinkError, ValidationError
from pushlink.models.base import utcnow
from pushlink.models.device_token import (
    LIVE_STATUSES,
    DeviceToken,
    InvalidReason,
    TokenPlatform,
    TokenStatus,
)

logger = logging.getLogger(__name__)

MAX_ADDRESS_LENGTH = 4096
# Bound on compare-and-swap rounds; each lost round means another writer won the slot
_MAX_SLOT_ATTEMPTS = 5

_EXPO_TOKEN_RE = re.compile(r"^Expo(nent)?PushToken\[[^\[\]\s]+\]$")
_APNS_TOKEN_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_FCM_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-:]{32,4096}$")


class SlotContentionError(PushlinkError):
    """The platform slot kept changing under us; the registration should be retried."""


def mask_address(address: str | None) -> str:
    """Loggable form of a push address (addresses are credentials)."""
    if not address:
        return "<empty>"
    return f"{address[:12]}..." if len(address) > 12 else "***"


def coerce_platform(platform: str | TokenPlatform) -> TokenPlatform:
    if isinstance(platform, TokenPlatform):
        return platform
    try:
        return TokenPlatform((platform or "").strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unsupported platform: {platform!r}", field="platform"
        ) from None


def validate_address(platform: TokenPlatform, address: str | None) -> str:
    """Check that an address is well-formed for the declared platform.

    Expo push tokens are accepted for every platform. Native APNs tokens are
    accepted for ios and FCM registration tokens for android.
    """
    if not address or not address.strip():
        raise ValidationError("Push address must not be empty", field="address")
    if len(address) > MAX_ADDRESS_LENGTH:
        raise ValidationError("Push address is too long", field="address")

    if _EXPO_TOKEN_RE.match(address):
        return address
    if platform == TokenPlatform.IOS and _APNS_TOKEN_RE.match(address):
        return address
    if platform == TokenPlatform.ANDROID and _FCM_TOKEN_RE.match(address):
        return address

    raise ValidationError(
        f"Push address is not a valid {platform.value} token", field="address"
    )


class TokenStore:
    """Token registry bound to one database session (one logical transaction)."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def upsert(
        self,
        user_id: str,
        platform: str | TokenPlatform,
        address: str,
    ) -> DeviceToken:
        """Make ``address`` the live token for (user_id, platform).

        Idempotent: repeating the call with the same address returns the
        existing row. A different live address in the slot is invalidated as
        ``superseded`` within the same transaction as the insert.
        """
        if not user_id or not str(user_id).strip():
            raise ValidationError("User id must not be empty", field="user_id")
        platform = coerce_platform(platform)
        address = validate_address(platform, address)

        await self._release_from_other_slots(user_id, platform, address)

        for _ in range(_MAX_SLOT_ATTEMPTS):
            inserted = await self._insert_if_slot_free(user_id, platform, address)
            if inserted is not None:
                logger.info(
                    "Registered device token user=%s platform=%s address=%s",
                    user_id,
                    platform.value,
                    mask_address(address),
                )
                return inserted

            occupant = await self._live_occupant(user_id, platform)
            if occupant is None:
                # Slot was freed between our insert and select; try again
                continue

            if occupant.address == address:
                if occupant.status == TokenStatus.PENDING_RETRY:
                    occupant.status = TokenStatus.ACTIVE
                    await self._db.flush()
                return occupant

            replaced = await self._invalidate_by_id(occupant.id, InvalidReason.SUPERSEDED)
            if replaced:
                logger.info(
                    "Superseded device token user=%s platform=%s old=%s",
                    user_id,
                    platform.value,
                    mask_address(occupant.address),
                )

        raise SlotContentionError(
            f"Could not claim {platform.value} slot for user {user_id}"
        )

    async def lookup_active(self, user_id: str) -> list[DeviceToken]:
        """All live tokens of a user across platforms, for fan-out."""
        result = await self._db.execute(
            select(DeviceToken)
            .where(
                DeviceToken.user_id == user_id,
                DeviceToken.status.in_(LIVE_STATUSES),
            )
            .order_by(DeviceToken.platform)
        )
        return list(result.scalars().all())

    async def mark_invalid(
        self,
        address: str,
        reason: InvalidReason = InvalidReason.PROVIDER_REJECTED,
    ) -> int:
        """Invalidate every live row holding ``address``.

        Unknown addresses are a no-op: provider receipts can race local deletions.
        """
        result = await self._db.execute(
            update(DeviceToken)
            .where(
                DeviceToken.address == address,
                DeviceToken.status.in_(LIVE_STATUSES),
            )
            .values(status=TokenStatus.INVALID, invalid_reason=reason, invalidated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            logger.info(
                "Invalidated %d device token(s) address=%s reason=%s",
                result.rowcount,
                mask_address(address),
                reason.value,
            )
        return result.rowcount

    async def deactivate(self, user_id: str, address: str) -> bool:
        """Client-initiated unregistration of one of the user's addresses."""
        result = await self._db.execute(
            update(DeviceToken)
            .where(
                DeviceToken.user_id == user_id,
                DeviceToken.address == address,
                DeviceToken.status.in_(LIVE_STATUSES),
            )
            .values(
                status=TokenStatus.INVALID,
                invalid_reason=InvalidReason.UNREGISTERED,
                invalidated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    async def mark_pending_retry(self, addresses: Iterable[str]) -> int:
        """Flag active tokens whose last delivery was deferred by the provider."""
        addresses = list(addresses)
        if not addresses:
            return 0
        result = await self._db.execute(
            update(DeviceToken)
            .where(
                DeviceToken.address.in_(addresses),
                DeviceToken.status == TokenStatus.ACTIVE,
            )
            .values(status=TokenStatus.PENDING_RETRY)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def restore_active(self, addresses: Iterable[str]) -> int:
        """Clear the pending-retry flag after a successful delivery."""
        addresses = list(addresses)
        if not addresses:
            return 0
        result = await self._db.execute(
            update(DeviceToken)
            .where(
                DeviceToken.address.in_(addresses),
                DeviceToken.status == TokenStatus.PENDING_RETRY,
            )
            .values(status=TokenStatus.ACTIVE)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def touch(self, token_ids: Iterable[uuid.UUID]) -> None:
        """Record a dispatch attempt on the given tokens."""
        token_ids = list(token_ids)
        if not token_ids:
            return
        await self._db.execute(
            update(DeviceToken)
            .where(DeviceToken.id.in_(token_ids))
            .values(last_used_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )

    async def purge_invalid(self, older_than: datetime) -> int:
        """Physically delete invalid tokens invalidated before ``older_than``."""
        result = await self._db.execute(
            delete(DeviceToken).where(
                DeviceToken.status == TokenStatus.INVALID,
                DeviceToken.invalidated_at.isnot(None),
                DeviceToken.invalidated_at < older_than,
            )
        )
        return result.rowcount

    # --- internals ---

    async def _insert_if_slot_free(
        self,
        user_id: str,
        platform: TokenPlatform,
        address: str,
    ) -> DeviceToken | None:
        stmt = (
            pg_insert(DeviceToken)
            .values(
                id=uuid.uuid4(),
                user_id=user_id,
                platform=platform,
                address=address,
                status=TokenStatus.ACTIVE,
            )
            .on_conflict_do_nothing(
                index_elements=[DeviceToken.user_id, DeviceToken.platform],
                index_where=DeviceToken.status.in_(LIVE_STATUSES),
            )
            .returning(DeviceToken)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _live_occupant(
        self,
        user_id: str,
        platform: TokenPlatform,
    ) -> DeviceToken | None:
        result = await self._db.execute(
            select(DeviceToken)
            .where(
                DeviceToken.user_id == user_id,
                DeviceToken.platform == platform,
                DeviceToken.status.in_(LIVE_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _invalidate_by_id(self, token_id: uuid.UUID, reason: InvalidReason) -> bool:
        result = await self._db.execute(
            update(DeviceToken)
            .where(
                DeviceToken.id == token_id,
                DeviceToken.status.in_(LIVE_STATUSES),
            )
            .values(status=TokenStatus.INVALID, invalid_reason=reason, invalidated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def _release_from_other_slots(
        self,
        user_id: str,
        platform: TokenPlatform,
        address: str,
    ) -> None:
        """An address is one installation: drop it from every other live slot.

        That covers other accounts and this account's other platforms (Expo
        tokens are valid for any platform).
        """
        result = await self._db.execute(
            update(DeviceToken)
            .where(
                DeviceToken.address == address,
                or_(DeviceToken.user_id != user_id, DeviceToken.platform != platform),
                DeviceToken.status.in_(LIVE_STATUSES),
            )
            .values(
                status=TokenStatus.INVALID,
                invalid_reason=InvalidReason.REASSIGNED,
                invalidated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            logger.info(
                "Reassigned address=%s away from %d other slot(s)",
                mask_address(address),
                result.rowcount,
            )
