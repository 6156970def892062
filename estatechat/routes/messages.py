# Appointment chat endpoints: history, send, edit, delete, annotations and read receipts.
# Writes are async handlers so their fan-out runs on the event loop that owns the sockets.
from typing import Any, Callable, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..rate_limit import rate_limit
from ..realtime.hub import RealtimeHub, get_hub
from ..services.message_store import serialize_message
from .auth import get_current_user

# Router namespace for appointment chat APIs
router = APIRouter()
logger = logging.getLogger("estatechat.chat")


def _persist(db: Session, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a store operation; storage failures roll back and surface as 500."""
    try:
        return fn(db, *args, **kwargs)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("chat.persist.failed", extra={"operation": getattr(fn, "__name__", "?")})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save chat change") from exc


def _read(msg: models.Message, user: models.User) -> dict:
    return serialize_message(msg, viewer_is_admin=user.is_admin)


@router.get("/appointments/{appointment_id}/messages", response_model=List[schemas.MessageRead])
def list_messages(
    appointment_id: int,
    limit: int = Query(50, ge=1, le=200),
    since_id: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> List[dict]:
    """
    Chat history of an appointment.

    Ordering:
    - Insertion order (ascending id)

    Pagination:
    - no since_id: the newest `limit` messages
    - since_id: the next `limit` messages with id strictly greater than this value

    Messages the caller removed for themselves are omitted.
    """
    items = hub.messages.history(db, appointment_id, user, limit=limit, since_id=since_id)
    logger.info(
        "messages.history",
        extra={"appointment_id": appointment_id, "since_id": since_id, "limit": limit, "count": len(items), "user_id": user.id},
    )
    return [_read(m, user) for m in items]


@router.get("/appointments/{appointment_id}/messages/pinned", response_model=List[schemas.MessageRead])
def pinned_messages(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> List[dict]:
    return [_read(m, user) for m in hub.messages.active_pins(db, appointment_id, user)]


@router.get("/appointments/{appointment_id}/messages/starred", response_model=List[schemas.MessageRead])
def starred_messages(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> List[dict]:
    return [_read(m, user) for m in hub.messages.starred(db, appointment_id, user)]


@router.post(
    "/appointments/{appointment_id}/messages",
    response_model=schemas.MessageRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("message"))],
)
async def send_message(
    appointment_id: int,
    payload: schemas.MessageCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    msg = _persist(db, hub.messages.append, appointment_id, user, payload)
    return _read(msg, user)


@router.patch(
    "/appointments/{appointment_id}/messages/{message_id}",
    response_model=schemas.MessageRead,
    dependencies=[Depends(rate_limit("write"))],
)
async def edit_message(
    appointment_id: int,
    message_id: int,
    payload: schemas.MessageEdit,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    msg, _changed = _persist(db, hub.messages.edit, appointment_id, message_id, user, payload.message)
    return _read(msg, user)


@router.delete("/appointments/{appointment_id}/messages/{message_id}", response_model=schemas.ActionResult)
async def delete_message(
    appointment_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.ActionResult:
    _persist(db, hub.messages.delete_for_everyone, appointment_id, message_id, user)
    return schemas.ActionResult(message="Message deleted for everyone")


@router.post("/appointments/{appointment_id}/messages/bulk-delete", response_model=schemas.BulkDeleteResult)
async def bulk_delete_messages(
    appointment_id: int,
    payload: schemas.BulkDeleteRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.BulkDeleteResult:
    deleted = _persist(db, hub.messages.bulk_delete, appointment_id, payload.message_ids, user)
    return schemas.BulkDeleteResult(message=f"{len(deleted)} message(s) deleted", deleted_ids=deleted)


@router.post(
    "/appointments/{appointment_id}/messages/{message_id}/remove-for-me", response_model=schemas.ActionResult
)
async def remove_message_for_me(
    appointment_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.ActionResult:
    _persist(db, hub.messages.remove_for_me, appointment_id, message_id, user)
    return schemas.ActionResult(message="Message removed from your view")


@router.post("/appointments/{appointment_id}/messages/clear", response_model=schemas.ClearChatResult)
async def clear_chat(
    appointment_id: int,
    payload: schemas.ClearChatRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.ClearChatResult:
    removed = _persist(db, hub.messages.clear_all, appointment_id, user, payload.password)
    return schemas.ClearChatResult(message="Chat cleared", removed=removed)


@router.post("/appointments/{appointment_id}/messages/{message_id}/star", response_model=schemas.MessageRead)
async def star_message(
    appointment_id: int,
    message_id: int,
    payload: schemas.StarRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    msg = _persist(db, hub.messages.star, appointment_id, message_id, user, payload.starred)
    return _read(msg, user)


@router.post("/appointments/{appointment_id}/messages/{message_id}/pin", response_model=schemas.MessageRead)
async def pin_message(
    appointment_id: int,
    message_id: int,
    payload: schemas.PinRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    msg = _persist(
        db,
        hub.messages.pin,
        appointment_id,
        message_id,
        user,
        payload.pinned,
        duration=payload.pin_duration,
        custom_hours=payload.custom_hours,
    )
    return _read(msg, user)


@router.post("/appointments/{appointment_id}/messages/{message_id}/react", response_model=schemas.MessageRead)
async def react_to_message(
    appointment_id: int,
    message_id: int,
    payload: schemas.ReactRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    msg = _persist(db, hub.messages.react, appointment_id, message_id, user, payload.emoji)
    return _read(msg, user)


@router.post("/appointments/{appointment_id}/messages/read", response_model=schemas.ReadReceiptResult)
async def mark_messages_read(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> schemas.ReadReceiptResult:
    updated = _persist(db, hub.messages.mark_all_read, appointment_id, user)
    return schemas.ReadReceiptResult(updated=updated)
