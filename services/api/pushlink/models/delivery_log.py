"""Delivery log: one row per dispatch attempt to a device address."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from pushlink.models.base import Base, UUIDPrimaryKeyMixin, utcnow


class DeliveryLog(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "delivery_log"
    __table_args__ = (
        Index(
            "ix_delivery_log_pending_receipts",
            "created_at",
            postgresql_where=text("provider_message_id IS NOT NULL AND receipt_checked_at IS NULL"),
        ),
    )

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    token_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("device_tokens.id", ondelete="SET NULL"),
        nullable=True,
    )
    address: Mapped[str] = mapped_column(String(4096), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    deep_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)  # receipt outcome
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("now()"),
        nullable=False,
    )
    receipt_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<DeliveryLog {self.outcome} token_id={self.token_id}>"
