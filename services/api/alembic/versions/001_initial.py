"""Initial schema: device tokens and delivery log.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None

token_platform = postgresql.ENUM("ios", "android", "unknown", name="token_platform", create_type=False)
token_status = postgresql.ENUM("active", "invalid", "pending_retry", name="token_status", create_type=False)
token_invalid_reason = postgresql.ENUM(
    "superseded", "unregistered", "provider_rejected", "reassigned",
    name="token_invalid_reason",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    token_platform.create(bind, checkfirst=True)
    token_status.create(bind, checkfirst=True)
    token_invalid_reason.create(bind, checkfirst=True)

    # --- device_tokens ---
    op.create_table(
        "device_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("platform", token_platform, nullable=False),
        sa.Column("address", sa.String(4096), nullable=False),
        sa.Column("status", token_status, nullable=False, server_default="active"),
        sa.Column("invalid_reason", token_invalid_reason, nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_device_tokens_user_id", "device_tokens", ["user_id"])
    op.create_index("ix_device_tokens_address", "device_tokens", ["address"])
    # One live token per (user, platform); invalid rows are history and may repeat
    op.create_index(
        "uq_device_tokens_live_slot",
        "device_tokens",
        ["user_id", "platform"],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'pending_retry')"),
    )

    # --- delivery_log ---
    op.create_table(
        "delivery_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column(
            "token_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("device_tokens.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("address", sa.String(4096), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("deep_link", sa.Text, nullable=True),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("receipt_checked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_delivery_log_user_id", "delivery_log", ["user_id"])
    op.create_index(
        "ix_delivery_log_pending_receipts",
        "delivery_log",
        ["created_at"],
        postgresql_where=sa.text("provider_message_id IS NOT NULL AND receipt_checked_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_table("delivery_log")
    op.drop_table("device_tokens")
    bind = op.get_bind()
    token_invalid_reason.drop(bind, checkfirst=True)
    token_status.drop(bind, checkfirst=True)
    token_platform.drop(bind, checkfirst=True)
