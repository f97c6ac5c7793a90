"""Device token model for push notifications."""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from pushlink.models.base import Base, UUIDPrimaryKeyMixin, enum_values, utcnow


class TokenPlatform(str, enum.Enum):
    IOS = "ios"
    ANDROID = "android"
    UNKNOWN = "unknown"


class TokenStatus(str, enum.Enum):
    ACTIVE = "active"
    INVALID = "invalid"
    PENDING_RETRY = "pending_retry"


class InvalidReason(str, enum.Enum):
    SUPERSEDED = "superseded"
    UNREGISTERED = "unregistered"
    PROVIDER_REJECTED = "provider_rejected"
    REASSIGNED = "reassigned"


# Statuses that occupy the (user_id, platform) slot and receive notifications
LIVE_STATUSES = (TokenStatus.ACTIVE, TokenStatus.PENDING_RETRY)
LIVE_STATUS_SQL = "status IN ('active', 'pending_retry')"


class DeviceToken(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "device_tokens"
    __table_args__ = (
        # One live token per platform slot
        Index(
            "uq_device_tokens_live_slot",
            "user_id",
            "platform",
            unique=True,
            postgresql_where=text(LIVE_STATUS_SQL),
            sqlite_where=text(LIVE_STATUS_SQL),
        ),
        Index("ix_device_tokens_address", "address"),
    )

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    platform: Mapped[TokenPlatform] = mapped_column(
        Enum(TokenPlatform, name="token_platform", values_callable=enum_values),
        nullable=False,
    )
    address: Mapped[str] = mapped_column(String(4096), nullable=False)
    status: Mapped[TokenStatus] = mapped_column(
        Enum(TokenStatus, name="token_status", values_callable=enum_values),
        default=TokenStatus.ACTIVE,
        nullable=False,
    )
    invalid_reason: Mapped[InvalidReason | None] = mapped_column(
        Enum(InvalidReason, name="token_invalid_reason", values_callable=enum_values),
        nullable=True,
    )
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("now()"),
        nullable=False,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<DeviceToken {self.platform} user_id={self.user_id} status={self.status}>"
