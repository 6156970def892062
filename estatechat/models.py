# SQLAlchemy ORM models for the appointment chat domain (users, appointments, messages, call history).
# Keep business logic out of models; state transitions live in services and real-time components.
from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import declarative_mixin

from .db import Base


ADMIN_ROLES = ("admin", "rootadmin")


def is_approved_admin(role: str | None, approval_status: str | None) -> bool:
    """Root admins are always trusted; plain admins only once approved."""
    if role == "rootadmin":
        return True
    return role == "admin" and approval_status == "approved"


@declarative_mixin
class TimestampMixin:
    """Common UTC-aware timestamps automatically managed by the database.

    - created_at: set on insert
    - updated_at: set on insert and updated on each modification
    """
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class User(Base, TimestampMixin):
    """Marketplace account.

    Roles:
    - user: buyer or seller depending on the appointment
    - admin: moderates appointments once approved by a root admin
    - rootadmin: full access
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    username = Column(String(100), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="user", index=True)
    # pending / approved / rejected; only meaningful for role == "admin"
    admin_approval_status = Column(String(20), nullable=True)

    @property
    def is_admin(self) -> bool:
        return is_approved_admin(self.role, self.admin_approval_status)


class Appointment(Base, TimestampMixin):
    """Scheduled buyer/seller meeting about one listing; container of one chat conversation.

    Chat lock state is kept per side: a password hash, the locked flag and a transient
    access flag that is reset whenever the chat is closed.
    """
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    listing_id = Column(Integer, nullable=True)
    property_name = Column(String(255), nullable=False, default="")
    meeting_date = Column(Date, nullable=True)

    buyer_chat_locked = Column(Boolean, nullable=False, default=False)
    buyer_chat_password = Column(String(255), nullable=True)
    buyer_chat_access_granted = Column(Boolean, nullable=False, default=False)
    buyer_chat_cleared_at = Column(DateTime(timezone=True), nullable=True)
    seller_chat_locked = Column(Boolean, nullable=False, default=False)
    seller_chat_password = Column(String(255), nullable=True)
    seller_chat_access_granted = Column(Boolean, nullable=False, default=False)
    seller_chat_cleared_at = Column(DateTime(timezone=True), nullable=True)

    # Hidden from the admin appointment list without deleting anything
    admin_hidden = Column(Boolean, nullable=False, default=False)

    def side_of(self, user_id: int) -> str | None:
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None

    def other_participant(self, user_id: int) -> int | None:
        if user_id == self.buyer_id:
            return self.seller_id
        if user_id == self.seller_id:
            return self.buyer_id
        return None


class Message(Base):
    """One chat entry of an appointment conversation.

    Delivery state machine (monotonic):
    sent -> delivered -> read   (sent -> read is allowed when read directly)

    Per-user sets (read_by, removed_for, starred_by) and reactions are JSON lists;
    they are reassigned, never mutated in place, so the ORM tracks the change.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    sender_email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Content variant: text | image | video | document | audio
    type = Column(String(20), nullable=False, default="text")
    message = Column(Text, nullable=False, default="")
    image_url = Column(String(1024), nullable=True)
    video_url = Column(String(1024), nullable=True)
    document_url = Column(String(1024), nullable=True)
    document_name = Column(String(255), nullable=True)
    document_mime_type = Column(String(255), nullable=True)
    audio_url = Column(String(1024), nullable=True)
    audio_name = Column(String(255), nullable=True)
    audio_mime_type = Column(String(255), nullable=True)
    reply_to_id = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False, default="sent")
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    read_by = Column(JSON, nullable=False, default=list)

    deleted = Column(Boolean, nullable=False, default=False)
    deleted_by = Column(String(255), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    original_message = Column(Text, nullable=True)
    original_image_url = Column(String(1024), nullable=True)
    removed_for = Column(JSON, nullable=False, default=list)

    edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)

    starred_by = Column(JSON, nullable=False, default=list)

    pinned = Column(Boolean, nullable=False, default=False)
    pinned_by = Column(Integer, nullable=True)
    pinned_at = Column(DateTime(timezone=True), nullable=True)
    pin_expires_at = Column(DateTime(timezone=True), nullable=True)
    pin_duration = Column(String(20), nullable=True)

    reactions = Column(JSON, nullable=False, default=list)

    # Insertion order is the conversation order
    __table_args__ = (
        Index("ix_messages_appointment_created_at", "appointment_id", "created_at"),
        Index("ix_messages_status", "status"),
    )


class CallHistory(Base, TimestampMixin):
    """Durable audit record of one call attempt.

    Status transitions:
    initiated -> ringing -> accepted -> ended
            └── rejected / missed / cancelled (only before acceptance)

    placed_at is when the call was dialled; start_time is the synchronized moment the
    receiver accepted and is the epoch both sides use for the elapsed duration.
    """
    __tablename__ = "call_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    call_id = Column(String(64), nullable=False, unique=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    caller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    call_type = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default="initiated")
    placed_at = Column(DateTime(timezone=True), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Integer, nullable=True)
    ended_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    admin_notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_call_history_status", "status"),
        Index("ix_call_history_placed_at", "placed_at"),
    )
