"""Initial schema: users, appointments, messages, call history

Revision ID: 20260301_090000
Revises:
Create Date: 2026-03-01 09:00:00

Notes:
- Per-message user sets (read_by, removed_for, starred_by) and reactions are JSON columns.
- (appointment_id, created_at) index backs the chat timeline query.
- call_history keeps placed_at (dialled) and start_time (accepted) separately.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301_090000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="user"),
        sa.Column("admin_approval_status", sa.String(length=20), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), nullable=True),
        sa.Column("property_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("meeting_date", sa.Date(), nullable=True),
        sa.Column("buyer_chat_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("buyer_chat_password", sa.String(length=255), nullable=True),
        sa.Column("buyer_chat_access_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("buyer_chat_cleared_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seller_chat_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("seller_chat_password", sa.String(length=255), nullable=True),
        sa.Column("seller_chat_access_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("seller_chat_cleared_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_hidden", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_appointments_id", "appointments", ["id"])
    op.create_index("ix_appointments_buyer_id", "appointments", ["buyer_id"])
    op.create_index("ix_appointments_seller_id", "appointments", ["seller_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "appointment_id", sa.Integer(), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("sender_email", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False, server_default="text"),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("image_url", sa.String(length=1024), nullable=True),
        sa.Column("video_url", sa.String(length=1024), nullable=True),
        sa.Column("document_url", sa.String(length=1024), nullable=True),
        sa.Column("document_name", sa.String(length=255), nullable=True),
        sa.Column("document_mime_type", sa.String(length=255), nullable=True),
        sa.Column("audio_url", sa.String(length=1024), nullable=True),
        sa.Column("audio_name", sa.String(length=255), nullable=True),
        sa.Column("audio_mime_type", sa.String(length=255), nullable=True),
        sa.Column("reply_to_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="sent"),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_by", sa.JSON(), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_by", sa.String(length=255), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_message", sa.Text(), nullable=True),
        sa.Column("original_image_url", sa.String(length=1024), nullable=True),
        sa.Column("removed_for", sa.JSON(), nullable=False),
        sa.Column("edited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("starred_by", sa.JSON(), nullable=False),
        sa.Column("pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pinned_by", sa.Integer(), nullable=True),
        sa.Column("pinned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pin_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pin_duration", sa.String(length=20), nullable=True),
        sa.Column("reactions", sa.JSON(), nullable=False),
    )
    op.create_index("ix_messages_id", "messages", ["id"])
    op.create_index("ix_messages_appointment_id", "messages", ["appointment_id"])
    op.create_index("ix_messages_sender_id", "messages", ["sender_id"])
    op.create_index("ix_messages_appointment_created_at", "messages", ["appointment_id", "created_at"])
    op.create_index("ix_messages_status", "messages", ["status"])

    op.create_table(
        "call_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("call_id", sa.String(length=64), nullable=False),
        sa.Column(
            "appointment_id", sa.Integer(), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("caller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("receiver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("call_type", sa.String(length=10), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="initiated"),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("ended_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_call_history_id", "call_history", ["id"])
    op.create_index("ix_call_history_call_id", "call_history", ["call_id"], unique=True)
    op.create_index("ix_call_history_appointment_id", "call_history", ["appointment_id"])
    op.create_index("ix_call_history_caller_id", "call_history", ["caller_id"])
    op.create_index("ix_call_history_receiver_id", "call_history", ["receiver_id"])
    op.create_index("ix_call_history_status", "call_history", ["status"])
    op.create_index("ix_call_history_placed_at", "call_history", ["placed_at"])


def downgrade() -> None:
    op.drop_table("call_history")
    op.drop_table("messages")
    op.drop_table("appointments")
    op.drop_table("users")
