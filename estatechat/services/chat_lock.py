# Per-side chat lock: each participant may gate their own view of the chat with a password.
from __future__ import annotations

import logging
from typing import Tuple

from sqlalchemy.orm import Session

from .. import models
from ..errors import AuthorizationError, ChatError, InvalidCredentialsError, NotFoundError
from ..realtime.rooms import RoomRouter, appointment_audience
from ..security import hash_password, verify_password
from ..timeutils import utcnow
from .message_store import MessageStore

logger = logging.getLogger("estatechat.chat")


def participant_side(db: Session, appointment_id: int, user: models.User) -> Tuple[models.Appointment, str]:
    """Locks belong to buyer or seller; admins have no lock of their own."""
    appt = db.get(models.Appointment, appointment_id)
    if appt is None:
        raise NotFoundError("Appointment not found")
    side = appt.side_of(user.id)
    if side is None:
        raise AuthorizationError("Not authorized to manage this chat")
    return appt, side


def _set(appt: models.Appointment, side: str, **fields) -> None:
    for name, value in fields.items():
        setattr(appt, f"{side}_chat_{name}", value)


def _get(appt: models.Appointment, side: str, name: str):
    return getattr(appt, f"{side}_chat_{name}")


def status_of(appt: models.Appointment, side: str) -> dict:
    return {
        "chat_locked": bool(_get(appt, side, "locked")),
        "has_password": bool(_get(appt, side, "password")),
        "access_granted": bool(_get(appt, side, "access_granted")),
    }


def lock(db: Session, appointment_id: int, user: models.User, password: str) -> dict:
    appt, side = participant_side(db, appointment_id, user)
    _set(appt, side, locked=True, password=hash_password(password))
    db.commit()
    logger.info("chat.lock.set", extra={"appointment_id": appt.id, "side": side})
    return status_of(appt, side)


def _check_password(appt: models.Appointment, side: str, password: str) -> None:
    stored = _get(appt, side, "password")
    if not stored:
        raise ChatError("No password set for this chat")
    if not verify_password(password, stored):
        raise InvalidCredentialsError("Incorrect password")


def unlock(db: Session, appointment_id: int, user: models.User, password: str) -> dict:
    """Grant access until the chat is closed; the lock itself stays."""
    appt, side = participant_side(db, appointment_id, user)
    _check_password(appt, side, password)
    _set(appt, side, access_granted=True)
    db.commit()
    return status_of(appt, side)


def remove_lock(db: Session, appointment_id: int, user: models.User, password: str) -> dict:
    appt, side = participant_side(db, appointment_id, user)
    _check_password(appt, side, password)
    _set(appt, side, locked=False, password=None, access_granted=False)
    db.commit()
    logger.info("chat.lock.removed", extra={"appointment_id": appt.id, "side": side})
    return status_of(appt, side)


def reset_access(db: Session, appointment_id: int, user: models.User) -> dict:
    appt, side = participant_side(db, appointment_id, user)
    _set(appt, side, access_granted=False)
    db.commit()
    return status_of(appt, side)


def forgot_password(
    db: Session, appointment_id: int, user: models.User, store: MessageStore, router: RoomRouter
) -> dict:
    """Drop the caller's lock and, as the price of recovery, every message of the conversation."""
    appt, side = participant_side(db, appointment_id, user)
    _set(appt, side, locked=False, password=None, access_granted=False, cleared_at=utcnow())
    removed = store.purge(db, appt)
    db.commit()
    logger.warning(
        "chat.lock.forgot_password", extra={"appointment_id": appt.id, "side": side, "removed": removed}
    )
    router.emit(
        "chat-cleared",
        {"appointment_id": appt.id, "cleared_by": user.id},
        rooms=appointment_audience(appt.buyer_id, appt.seller_id, appt.id),
    )
    return status_of(appt, side)
