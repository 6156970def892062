"""Delivery/read tracking: decides when a message becomes delivered."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .. import models
from ..db import SessionLocal, session_scope
from ..timeutils import isoformat, utcnow
from .presence import PresenceRegistry
from .rooms import RoomRouter, appointment_audience
from .transport import Transport

logger = logging.getLogger("estatechat.chat")

STATUS_ORDER = {"sent": 0, "delivered": 1, "read": 2}


def advance_status(msg: models.Message, target: str, at: datetime) -> bool:
    """Move msg forward to target; never backwards. Returns True when the status changed."""
    if STATUS_ORDER[target] <= STATUS_ORDER.get(msg.status or "sent", 0):
        return False
    msg.status = target
    if target == "delivered":
        msg.delivered_at = at
    elif target == "read":
        msg.read_at = at
    return True


def intended_recipients(appt: models.Appointment, msg: models.Message) -> List[int]:
    """The other participant, or both participants when an admin wrote the message."""
    other = appt.other_participant(msg.sender_id)
    if other is not None:
        return [other]
    return [appt.buyer_id, appt.seller_id]


class DeliveryTracker:
    """Reacts to appends and presence edges; read receipts stay an explicit action."""

    def __init__(
        self,
        router: RoomRouter,
        presence: PresenceRegistry,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._router = router
        self._presence = presence
        self._session_factory = session_factory
        self._clock = clock

    def evaluate(self, db: Session, appt: models.Appointment, msg: models.Message) -> bool:
        """Called right after an append; marks the message delivered if a recipient is online."""
        if msg.status != "sent":
            return False
        if not any(self._presence.is_online(uid) for uid in intended_recipients(appt, msg)):
            return False
        advance_status(msg, "delivered", self._clock())
        db.commit()
        self._emit_delivered(appt, [msg])
        return True

    def acknowledge(self, db: Session, appt: models.Appointment, message_id: int, user_id: int) -> bool:
        """A recipient's client confirmed it received message_id."""
        msg = (
            db.query(models.Message)
            .filter(models.Message.id == message_id, models.Message.appointment_id == appt.id)
            .first()
        )
        if msg is None or msg.sender_id == user_id:
            return False
        if user_id not in intended_recipients(appt, msg):
            return False
        if not advance_status(msg, "delivered", self._clock()):
            return False
        db.commit()
        self._emit_delivered(appt, [msg])
        return True

    def redeliver_pending(self, user_id: int, transport: Optional[Transport] = None) -> int:
        """Online-edge listener: flip every pending message addressed to user_id to delivered."""
        with session_scope(self._session_factory) as db:
            appts = (
                db.query(models.Appointment)
                .filter(or_(models.Appointment.buyer_id == user_id, models.Appointment.seller_id == user_id))
                .all()
            )
            now = self._clock()
            flipped = 0
            for appt in appts:
                pending = (
                    db.query(models.Message)
                    .filter(
                        models.Message.appointment_id == appt.id,
                        models.Message.status == "sent",
                        models.Message.sender_id != user_id,
                    )
                    .order_by(models.Message.id.asc())
                    .all()
                )
                changed = [
                    msg for msg in pending
                    if user_id not in (msg.read_by or []) and advance_status(msg, "delivered", now)
                ]
                if changed:
                    db.commit()
                    self._emit_delivered(appt, changed)
                    flipped += len(changed)
            if flipped:
                logger.info("chat.delivery.redelivered", extra={"user_id": user_id, "count": flipped})
            return flipped

    def _emit_delivered(self, appt: models.Appointment, messages: List[models.Message]) -> None:
        rooms = appointment_audience(appt.buyer_id, appt.seller_id, appt.id)
        for msg in messages:
            self._router.emit(
                "comment-delivered",
                {
                    "appointment_id": appt.id,
                    "message_id": msg.id,
                    "status": msg.status,
                    "delivered_at": isoformat(msg.delivered_at),
                },
                rooms=rooms,
            )
