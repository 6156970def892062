# Call history queries, the REST fallback for ending a call, and admin call tooling.
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..errors import AuthorizationError, NotFoundError
from ..rate_limit import rate_limit
from ..realtime.hub import RealtimeHub, get_hub
from ..services import call_history
from .auth import get_current_user, require_admin

router = APIRouter()
logger = logging.getLogger("estatechat.calls")


@router.get("/calls/history", response_model=schemas.CallPage)
def my_call_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    appointment_id: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> schemas.CallPage:
    items, total, total_pages = call_history.list_for_user(db, user.id, page, limit, appointment_id)
    return schemas.CallPage(
        calls=[schemas.CallRead.model_validate(c) for c in items],
        total=total,
        page=page,
        total_pages=total_pages,
    )


@router.get("/calls/appointment/{appointment_id}", response_model=List[schemas.CallRead])
def appointment_call_history(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.CallHistory]:
    appt = db.get(models.Appointment, appointment_id)
    if appt is None:
        raise NotFoundError("Appointment not found")
    if appt.side_of(user.id) is None and not user.is_admin:
        raise AuthorizationError("Not authorized to view calls of this appointment")
    return call_history.list_for_appointment(db, appointment_id)


@router.get("/admin/calls", response_model=schemas.AdminCallPage)
def admin_call_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    call_type: Optional[schemas.CallType] = Query(None),
    call_status: Optional[schemas.CallStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
) -> schemas.AdminCallPage:
    items, total, total_pages = call_history.list_all(db, page, limit, call_type=call_type, status=call_status)
    return schemas.AdminCallPage(
        calls=[schemas.CallRead.model_validate(c) for c in items],
        total=total,
        page=page,
        total_pages=total_pages,
        stats=schemas.CallStats(**call_history.stats(db)),
    )


@router.get("/admin/calls/active", response_model=List[schemas.ActiveCall])
async def admin_active_calls(
    admin: models.User = Depends(require_admin),
    hub: RealtimeHub = Depends(get_hub),
) -> List[dict]:
    return hub.calls.snapshot()


@router.post("/calls/end", response_model=schemas.CallEndResponse, dependencies=[Depends(rate_limit("call"))])
async def end_call(
    payload: schemas.CallEndRequest,
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.CallEndResponse:
    """Same semantics as the `call-end` socket event, for clients whose socket is gone."""
    try:
        call, changed = hub.calls.end(user.id, payload.call_id, is_admin=user.is_admin)
    except SQLAlchemyError as exc:
        logger.exception("calls.end.persist_failed", extra={"call_id": payload.call_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to end call") from exc
    if call is None:
        raise NotFoundError("Call not found")
    return schemas.CallEndResponse(message="Call ended" if changed else "Call already ended", call=call)


@router.post("/admin/calls/termination-notification", response_model=schemas.ActionResult)
def send_termination_notification(
    payload: schemas.TerminationNotificationRequest,
    admin: models.User = Depends(require_admin),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.ActionResult:
    """Email both participants that an admin terminated their call."""
    if not hub.calls.send_termination_notice(payload.call_id, payload.reason):
        return schemas.ActionResult(success=False, message="Email notifications are not configured")
    logger.info("calls.termination_notice.sent", extra={"call_id": payload.call_id, "admin_id": admin.id})
    return schemas.ActionResult(message="Termination notification sent")
