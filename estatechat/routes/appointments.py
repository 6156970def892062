# Appointment endpoints used by the chat: booking, listing, admin visibility and the per-side chat lock.
from typing import List
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..errors import AuthorizationError, NotFoundError
from ..rate_limit import rate_limit
from ..realtime.hub import RealtimeHub, get_hub
from ..services import chat_lock
from .auth import get_current_user, require_admin

router = APIRouter()
logger = logging.getLogger("estatechat.appointments")


@router.post(
    "/appointments",
    response_model=schemas.AppointmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
def create_appointment(
    payload: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    buyer: models.User = Depends(get_current_user),
) -> models.Appointment:
    """The authenticated user books a meeting with a seller and becomes the buyer side."""
    if payload.seller_id == buyer.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot book an appointment with yourself")
    seller = db.get(models.User, payload.seller_id)
    if not seller:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Seller not found")

    appt = models.Appointment(
        buyer_id=buyer.id,
        seller_id=seller.id,
        listing_id=payload.listing_id,
        property_name=payload.property_name,
        meeting_date=payload.meeting_date,
    )
    db.add(appt)
    db.commit()
    db.refresh(appt)
    logger.info("appointments.created", extra={"appointment_id": appt.id, "buyer_id": buyer.id, "seller_id": seller.id})
    return appt


@router.get("/appointments", response_model=List[schemas.AppointmentRead])
def list_my_appointments(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.Appointment]:
    return (
        db.query(models.Appointment)
        .filter(or_(models.Appointment.buyer_id == user.id, models.Appointment.seller_id == user.id))
        .order_by(models.Appointment.id.desc())
        .all()
    )


@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentRead)
def get_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Appointment:
    appt = db.get(models.Appointment, appointment_id)
    if appt is None:
        raise NotFoundError("Appointment not found")
    if appt.side_of(user.id) is None and not user.is_admin:
        raise AuthorizationError("Not authorized to view this appointment")
    return appt


@router.get("/admin/appointments", response_model=List[schemas.AppointmentRead])
def admin_list_appointments(
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
) -> List[models.Appointment]:
    # Hidden appointments keep their data; they only leave the admin list
    return (
        db.query(models.Appointment)
        .filter(models.Appointment.admin_hidden.is_(False))
        .order_by(models.Appointment.id.desc())
        .all()
    )


@router.post("/admin/appointments/{appointment_id}/hide", response_model=schemas.ActionResult)
def admin_hide_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
) -> schemas.ActionResult:
    appt = db.get(models.Appointment, appointment_id)
    if appt is None:
        raise NotFoundError("Appointment not found")
    appt.admin_hidden = True
    db.commit()
    logger.info("appointments.admin_hidden", extra={"appointment_id": appt.id, "admin_id": admin.id})
    return schemas.ActionResult(message="Appointment hidden from the admin list")


# ----------------
# Chat lock
# ----------------
@router.patch("/appointments/{appointment_id}/chat/lock", response_model=schemas.ChatLockStatus)
def lock_chat(
    appointment_id: int,
    payload: schemas.ChatPasswordRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> schemas.ChatLockStatus:
    state = chat_lock.lock(db, appointment_id, user, payload.password)
    return schemas.ChatLockStatus(message="Chat locked successfully", **state)


@router.patch("/appointments/{appointment_id}/chat/unlock", response_model=schemas.ChatLockStatus)
def unlock_chat(
    appointment_id: int,
    payload: schemas.ChatPasswordRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> schemas.ChatLockStatus:
    state = chat_lock.unlock(db, appointment_id, user, payload.password)
    return schemas.ChatLockStatus(message="Chat access granted", **state)


@router.patch("/appointments/{appointment_id}/chat/remove-lock", response_model=schemas.ChatLockStatus)
def remove_chat_lock(
    appointment_id: int,
    payload: schemas.ChatPasswordRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> schemas.ChatLockStatus:
    state = chat_lock.remove_lock(db, appointment_id, user, payload.password)
    return schemas.ChatLockStatus(message="Chat lock removed successfully", **state)


@router.get("/appointments/{appointment_id}/chat/lock-status", response_model=schemas.ChatLockStatus)
def chat_lock_status(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> schemas.ChatLockStatus:
    appt, side = chat_lock.participant_side(db, appointment_id, user)
    return schemas.ChatLockStatus(**chat_lock.status_of(appt, side))


@router.patch("/appointments/{appointment_id}/chat/reset-access", response_model=schemas.ChatLockStatus)
def reset_chat_access(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> schemas.ChatLockStatus:
    state = chat_lock.reset_access(db, appointment_id, user)
    return schemas.ChatLockStatus(message="Chat access reset", **state)


@router.patch("/appointments/{appointment_id}/chat/forgot-password", response_model=schemas.ChatLockStatus)
async def forgot_chat_password(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.ChatLockStatus:
    state = chat_lock.forgot_password(db, appointment_id, user, hub.messages, hub.router)
    return schemas.ChatLockStatus(message="Chat unlocked and cleared", **state)
