"""initial schema

Revision ID: 0001
Revises:
Create Date: 2025-10-06 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("session_id", sa.Text(), primary_key=True),
        sa.Column("merchant_id", sa.Text(), nullable=False, server_default="default_merchant"),
        sa.Column("merchant_wallet", sa.Text()),
        sa.Column("created_by", sa.Text()),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("participants_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status in ('active','completed')", name="sessions_status_check"),
    )

    op.create_table(
        "participants",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("session_id", sa.Text(), sa.ForeignKey("sessions.session_id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text()),
        sa.Column("wallet_address", sa.Text()),
        sa.Column("added_by", sa.Text()),
        sa.Column("is_operator", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "user_id", name="participants_session_user_key"),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("session_id", sa.Text(), sa.ForeignKey("sessions.session_id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("tax", sa.Float(), nullable=False, server_default="0"),
        sa.Column("tip", sa.Float(), nullable=False, server_default="0"),
        sa.Column("assignees", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("session_id", sa.Text(), sa.ForeignKey("sessions.session_id", ondelete="CASCADE"), nullable=False),
        sa.Column("participant_id", sa.Text(), sa.ForeignKey("participants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_address", sa.Text(), nullable=False),
        sa.Column("to_address", sa.Text(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("token_address", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("tx_hash", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status in ('success','failed','pending')", name="payments_status_check"),
    )

    op.create_index("idx_participants_session", "participants", ["session_id"])
    op.create_index("idx_participants_wallet", "participants", ["session_id", "wallet_address"])
    op.create_index("idx_items_session", "items", ["session_id"])
    op.create_index("idx_payments_session", "payments", ["session_id"])


def downgrade() -> None:
    op.drop_index("idx_payments_session", table_name="payments")
    op.drop_index("idx_items_session", table_name="items")
    op.drop_index("idx_participants_wallet", table_name="participants")
    op.drop_index("idx_participants_session", table_name="participants")

    op.drop_table("payments")
    op.drop_table("items")
    op.drop_table("participants")
    op.drop_table("sessions")
