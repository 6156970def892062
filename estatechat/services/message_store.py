"""
Appointment message store.

Every operation resolves the acting user against the appointment first
(buyer, seller or approved admin) and raises a ChatError subclass before
touching any row. Writes commit, then fan out to the appointment audience.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from .. import models, schemas
from ..errors import AuthorizationError, ChatError, InvalidCredentialsError, NotFoundError, StateConflictError
from ..realtime.delivery import DeliveryTracker, advance_status
from ..realtime.rooms import RoomRouter, UserRoom, appointment_audience
from ..security import verify_password
from ..timeutils import as_utc, isoformat, utcnow

logger = logging.getLogger("estatechat.chat")

PIN_DURATIONS = {
    "24hrs": timedelta(hours=24),
    "7days": timedelta(days=7),
    "30days": timedelta(days=30),
}


def serialize_message(msg: models.Message, viewer_is_admin: bool = False) -> dict:
    """JSON-ready message. Preserved originals of deleted messages are only shown to admins."""
    data = schemas.MessageRead.model_validate(msg).model_dump(mode="json")
    if not viewer_is_admin:
        data["original_message"] = None
        data["original_image_url"] = None
        if msg.deleted:
            for field in schemas.MEDIA_FIELDS.values():
                data[field] = None
    return data


class MessageStore:
    def __init__(
        self,
        router: RoomRouter,
        delivery: DeliveryTracker,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._router = router
        self._delivery = delivery
        self._clock = clock

    # Lookups
    def authorize(self, db: Session, appointment_id: int, user: models.User) -> models.Appointment:
        appt = db.get(models.Appointment, appointment_id)
        if appt is None:
            raise NotFoundError("Appointment not found")
        if appt.side_of(user.id) is None and not user.is_admin:
            raise AuthorizationError("Not authorized to access this chat")
        return appt

    def _get_message(self, db: Session, appt: models.Appointment, message_id: int) -> models.Message:
        msg = (
            db.query(models.Message)
            .filter(models.Message.id == message_id, models.Message.appointment_id == appt.id)
            .first()
        )
        if msg is None:
            raise NotFoundError("Message not found")
        return msg

    def _fan_out(self, appt: models.Appointment, msg: models.Message) -> None:
        self._router.emit(
            "comment-update",
            {"appointment_id": appt.id, "comment": serialize_message(msg)},
            rooms=appointment_audience(appt.buyer_id, appt.seller_id, appt.id),
        )

    # Writes
    def append(
        self, db: Session, appointment_id: int, user: models.User, payload: schemas.MessageCreate
    ) -> models.Message:
        appt = self.authorize(db, appointment_id, user)
        if payload.reply_to is not None:
            # Replies only reference messages of the same conversation
            self._get_message(db, appt, payload.reply_to)
        msg = models.Message(
            appointment_id=appt.id,
            sender_id=user.id,
            sender_email=user.email,
            created_at=self._clock(),
            type=payload.type,
            message=payload.message.strip(),
            image_url=payload.image_url,
            video_url=payload.video_url,
            document_url=payload.document_url,
            document_name=payload.document_name,
            document_mime_type=payload.document_mime_type,
            audio_url=payload.audio_url,
            audio_name=payload.audio_name,
            audio_mime_type=payload.audio_mime_type,
            reply_to_id=payload.reply_to,
            status="sent",
            read_by=[user.id],
        )
        db.add(msg)
        db.commit()
        db.refresh(msg)
        logger.info(
            "chat.message.appended",
            extra={"appointment_id": appt.id, "message_id": msg.id, "sender_id": user.id, "type": msg.type},
        )
        self._fan_out(appt, msg)
        self._delivery.evaluate(db, appt, msg)
        return msg

    def edit(
        self, db: Session, appointment_id: int, message_id: int, user: models.User, new_text: str
    ) -> Tuple[models.Message, bool]:
        """Returns (message, changed); an unchanged trimmed text is a no-op."""
        appt = self.authorize(db, appointment_id, user)
        msg = self._get_message(db, appt, message_id)
        if msg.sender_id != user.id and not user.is_admin:
            raise AuthorizationError("Only the sender can edit this message")
        if msg.deleted:
            raise StateConflictError("Cannot edit a deleted message")
        text = new_text.strip()
        if not text:
            raise ChatError("Message cannot be empty")
        if text == (msg.message or "").strip():
            return msg, False

        msg.message = text
        msg.edited = True
        msg.edited_at = self._clock()
        db.commit()
        db.refresh(msg)
        logger.info("chat.message.edited", extra={"appointment_id": appt.id, "message_id": msg.id})
        self._fan_out(appt, msg)
        return msg, True

    def _soft_delete(self, msg: models.Message, user: models.User, now: datetime) -> None:
        # The first deletion's content wins; repeated deletes never overwrite it
        if msg.original_message is None:
            msg.original_message = msg.message or ""
        if msg.original_image_url is None and msg.image_url:
            msg.original_image_url = msg.image_url
        msg.message = ""
        msg.image_url = None
        msg.deleted = True
        msg.deleted_by = user.email
        msg.deleted_at = now

    def delete_for_everyone(
        self, db: Session, appointment_id: int, message_id: int, user: models.User
    ) -> models.Message:
        appt = self.authorize(db, appointment_id, user)
        msg = self._get_message(db, appt, message_id)
        if msg.sender_id != user.id and not user.is_admin:
            raise AuthorizationError("Only the sender or an admin can delete this message")
        self._soft_delete(msg, user, self._clock())
        db.commit()
        db.refresh(msg)
        logger.info(
            "chat.message.deleted",
            extra={"appointment_id": appt.id, "message_id": msg.id, "actor_id": user.id},
        )
        self._fan_out(appt, msg)
        return msg

    def bulk_delete(
        self, db: Session, appointment_id: int, message_ids: Iterable[object], user: models.User
    ) -> List[int]:
        """Soft-delete each id; invalid, missing and (for non-admins) foreign ids are skipped."""
        appt = self.authorize(db, appointment_id, user)
        wanted: List[int] = []
        for raw in message_ids:
            if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
                continue
            if raw not in wanted:
                wanted.append(raw)
        if not wanted:
            return []

        rows = (
            db.query(models.Message)
            .filter(models.Message.appointment_id == appt.id, models.Message.id.in_(wanted))
            .order_by(models.Message.id.asc())
            .all()
        )
        now = self._clock()
        deleted: List[models.Message] = []
        for msg in rows:
            if msg.sender_id != user.id and not user.is_admin:
                continue
            self._soft_delete(msg, user, now)
            deleted.append(msg)
        if not deleted:
            return []
        db.commit()
        logger.info(
            "chat.message.bulk_deleted",
            extra={"appointment_id": appt.id, "count": len(deleted), "requested": len(wanted), "actor_id": user.id},
        )
        for msg in deleted:
            self._fan_out(appt, msg)
        return [msg.id for msg in deleted]

    def remove_for_me(
        self, db: Session, appointment_id: int, message_id: int, user: models.User
    ) -> models.Message:
        appt = self.authorize(db, appointment_id, user)
        msg = self._get_message(db, appt, message_id)
        if user.id not in (msg.removed_for or []):
            msg.removed_for = list(msg.removed_for or []) + [user.id]
            db.commit()
            db.refresh(msg)
            self._router.emit(
                "comment-removed",
                {"appointment_id": appt.id, "message_id": msg.id},
                rooms=[UserRoom(user.id)],
            )
        return msg

    def purge(self, db: Session, appt: models.Appointment) -> int:
        """Irreversibly drop every message of the appointment; the caller commits."""
        return (
            db.query(models.Message)
            .filter(models.Message.appointment_id == appt.id)
            .delete(synchronize_session=False)
        )

    def clear_all(self, db: Session, appointment_id: int, user: models.User, password: str) -> int:
        appt = self.authorize(db, appointment_id, user)
        if not user.is_admin:
            raise AuthorizationError("Only admins can clear the whole chat")
        # Re-read the stored credential; a cached hash could be stale
        stored = db.get(models.User, user.id)
        db.refresh(stored)
        if not verify_password(password, stored.password_hash):
            raise InvalidCredentialsError("Incorrect password")
        existing = db.query(models.Message).filter(models.Message.appointment_id == appt.id).count()
        if existing == 0:
            raise StateConflictError("Chat is already empty")

        removed = self.purge(db, appt)
        db.commit()
        logger.warning(
            "chat.cleared", extra={"appointment_id": appt.id, "admin_id": user.id, "count": removed}
        )
        self._router.emit(
            "chat-cleared",
            {"appointment_id": appt.id, "cleared_by": user.id},
            rooms=appointment_audience(appt.buyer_id, appt.seller_id, appt.id),
        )
        return removed

    def star(
        self, db: Session, appointment_id: int, message_id: int, user: models.User, starred: bool
    ) -> models.Message:
        appt = self.authorize(db, appointment_id, user)
        msg = self._get_message(db, appt, message_id)
        current = list(msg.starred_by or [])
        if starred and user.id not in current:
            msg.starred_by = current + [user.id]
        elif not starred and user.id in current:
            msg.starred_by = [uid for uid in current if uid != user.id]
        else:
            return msg
        db.commit()
        db.refresh(msg)
        # Stars are private to the user who set them
        self._router.emit(
            "comment-update",
            {"appointment_id": appt.id, "comment": serialize_message(msg)},
            rooms=[UserRoom(user.id)],
        )
        return msg

    def pin(
        self,
        db: Session,
        appointment_id: int,
        message_id: int,
        user: models.User,
        pinned: bool,
        duration: Optional[str] = None,
        custom_hours: Optional[float] = None,
    ) -> models.Message:
        appt = self.authorize(db, appointment_id, user)
        msg = self._get_message(db, appt, message_id)
        if pinned:
            if msg.deleted:
                raise StateConflictError("Cannot pin a deleted message")
            if duration is None:
                raise ChatError("Pin duration is required")
            if duration == "custom":
                if not custom_hours or custom_hours <= 0:
                    raise ChatError("Custom pin duration requires a positive number of hours")
                span = timedelta(hours=custom_hours)
            else:
                span = PIN_DURATIONS[duration]
            now = self._clock()
            msg.pinned = True
            msg.pinned_by = user.id
            msg.pinned_at = now
            msg.pin_expires_at = now + span
            msg.pin_duration = duration
        else:
            msg.pinned = False
            msg.pinned_by = None
            msg.pinned_at = None
            msg.pin_expires_at = None
            msg.pin_duration = None
        db.commit()
        db.refresh(msg)
        logger.info(
            "chat.message.pinned",
            extra={"appointment_id": appt.id, "message_id": msg.id, "pinned": pinned, "duration": duration},
        )
        self._fan_out(appt, msg)
        return msg

    def react(
        self, db: Session, appointment_id: int, message_id: int, user: models.User, emoji: str
    ) -> models.Message:
        """At most one reaction per user: a new emoji replaces the old one, the same emoji toggles off."""
        appt = self.authorize(db, appointment_id, user)
        msg = self._get_message(db, appt, message_id)
        if msg.deleted:
            raise StateConflictError("Cannot react to a deleted message")
        reactions = list(msg.reactions or [])
        previous = next((r for r in reactions if r.get("user_id") == user.id), None)
        reactions = [r for r in reactions if r.get("user_id") != user.id]
        if previous is None or previous.get("emoji") != emoji:
            reactions.append(
                {
                    "emoji": emoji,
                    "user_id": user.id,
                    "user_name": user.username,
                    "timestamp": isoformat(self._clock()),
                }
            )
        msg.reactions = reactions
        db.commit()
        db.refresh(msg)
        self._fan_out(appt, msg)
        return msg

    def mark_all_read(self, db: Session, appointment_id: int, user: models.User) -> int:
        appt = self.authorize(db, appointment_id, user)
        rows = (
            db.query(models.Message)
            .filter(models.Message.appointment_id == appt.id, models.Message.sender_id != user.id)
            .order_by(models.Message.id.asc())
            .all()
        )
        now = self._clock()
        updated: List[models.Message] = []
        for msg in rows:
            if user.id in (msg.read_by or []):
                continue
            msg.read_by = list(msg.read_by or []) + [user.id]
            advance_status(msg, "read", now)
            updated.append(msg)
        if not updated:
            return 0
        db.commit()
        self._router.emit(
            "comment-read",
            {
                "appointment_id": appt.id,
                "reader_id": user.id,
                "message_ids": [msg.id for msg in updated],
                "read_at": isoformat(now),
            },
            rooms=appointment_audience(appt.buyer_id, appt.seller_id, appt.id),
        )
        return len(updated)

    # Reads
    def history(
        self,
        db: Session,
        appointment_id: int,
        user: models.User,
        limit: int = 50,
        since_id: Optional[int] = None,
    ) -> List[models.Message]:
        """
        Messages in insertion order, without the ones the viewer removed for themselves.

        Without since_id this is the newest `limit` messages; with it, the next
        `limit` messages after since_id.
        """
        appt = self.authorize(db, appointment_id, user)
        q = db.query(models.Message).filter(models.Message.appointment_id == appt.id)
        if since_id is not None:
            q = q.filter(models.Message.id > since_id)
        rows = q.order_by(models.Message.id.asc()).all()
        visible = [msg for msg in rows if user.id not in (msg.removed_for or [])]
        if since_id is None:
            return visible[-limit:]
        return visible[:limit]

    def active_pins(self, db: Session, appointment_id: int, user: models.User) -> List[models.Message]:
        appt = self.authorize(db, appointment_id, user)
        now = self._clock()
        rows = (
            db.query(models.Message)
            .filter(models.Message.appointment_id == appt.id, models.Message.pinned.is_(True))
            .order_by(models.Message.pinned_at.desc(), models.Message.id.desc())
            .all()
        )
        return [
            msg for msg in rows
            if msg.pin_expires_at is not None
            and as_utc(msg.pin_expires_at) > now
            and user.id not in (msg.removed_for or [])
        ]

    def starred(self, db: Session, appointment_id: int, user: models.User) -> List[models.Message]:
        appt = self.authorize(db, appointment_id, user)
        rows = (
            db.query(models.Message)
            .filter(models.Message.appointment_id == appt.id)
            .order_by(models.Message.id.asc())
            .all()
        )
        return [
            msg for msg in rows
            if user.id in (msg.starred_by or []) and user.id not in (msg.removed_for or [])
        ]
