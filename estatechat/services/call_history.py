# Call history persistence: one durable row per call attempt, plus the queries behind the history endpoints.
from __future__ import annotations

import math
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .. import models
from ..timeutils import as_utc

TERMINAL_STATUSES = ("rejected", "ended", "missed", "cancelled")
RINGING_STATUSES = ("initiated", "ringing")


def compute_duration(start: Optional[datetime], end: datetime) -> int:
    """Whole seconds between start and end; 0 for calls that never connected."""
    if start is None:
        return 0
    return max(0, int((as_utc(end) - as_utc(start)).total_seconds()))


def create_record(
    db: Session,
    *,
    call_id: str,
    appointment_id: int,
    caller_id: int,
    receiver_id: int,
    call_type: str,
    placed_at: datetime,
) -> models.CallHistory:
    record = models.CallHistory(
        call_id=call_id,
        appointment_id=appointment_id,
        caller_id=caller_id,
        receiver_id=receiver_id,
        call_type=call_type,
        status="initiated",
        placed_at=placed_at,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def get_record(db: Session, call_id: str) -> Optional[models.CallHistory]:
    return db.query(models.CallHistory).filter(models.CallHistory.call_id == call_id).first()


def append_admin_note(record: models.CallHistory, line: str) -> None:
    """Admin notes are an append-only trail, one line per intervention."""
    record.admin_notes = f"{record.admin_notes}\n{line}" if record.admin_notes else line


def finish(
    record: models.CallHistory,
    status: str,
    end_time: datetime,
    ended_by: Optional[int] = None,
    with_duration: bool = True,
) -> None:
    record.status = status
    record.end_time = end_time
    if ended_by is not None:
        record.ended_by = ended_by
    if with_duration:
        record.duration = compute_duration(record.start_time, end_time)


def _paginate(query, page: int, limit: int) -> Tuple[List[models.CallHistory], int, int]:
    total = query.count()
    items = (
        query.order_by(models.CallHistory.placed_at.desc(), models.CallHistory.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    total_pages = math.ceil(total / limit) if total else 0
    return items, total, total_pages


def list_for_user(
    db: Session, user_id: int, page: int = 1, limit: int = 20, appointment_id: Optional[int] = None
) -> Tuple[List[models.CallHistory], int, int]:
    q = db.query(models.CallHistory).filter(
        or_(models.CallHistory.caller_id == user_id, models.CallHistory.receiver_id == user_id)
    )
    if appointment_id is not None:
        q = q.filter(models.CallHistory.appointment_id == appointment_id)
    return _paginate(q, page, limit)


def list_for_appointment(db: Session, appointment_id: int) -> List[models.CallHistory]:
    return (
        db.query(models.CallHistory)
        .filter(models.CallHistory.appointment_id == appointment_id)
        .order_by(models.CallHistory.placed_at.desc(), models.CallHistory.id.desc())
        .all()
    )


def list_all(
    db: Session,
    page: int = 1,
    limit: int = 20,
    call_type: Optional[str] = None,
    status: Optional[str] = None,
) -> Tuple[List[models.CallHistory], int, int]:
    q = db.query(models.CallHistory)
    if call_type:
        q = q.filter(models.CallHistory.call_type == call_type)
    if status:
        q = q.filter(models.CallHistory.status == status)
    return _paginate(q, page, limit)


def stats(db: Session) -> dict:
    """Platform-wide counters; the average only considers ended calls that actually connected."""
    counts = dict(
        db.query(models.CallHistory.call_type, func.count(models.CallHistory.id))
        .group_by(models.CallHistory.call_type)
        .all()
    )
    missed = db.query(models.CallHistory).filter(models.CallHistory.status == "missed").count()
    avg = (
        db.query(func.avg(models.CallHistory.duration))
        .filter(models.CallHistory.status == "ended", models.CallHistory.duration > 0)
        .scalar()
    )
    return {
        "total": sum(counts.values()),
        "audio": counts.get("audio", 0),
        "video": counts.get("video", 0),
        "missed": missed,
        "average_duration": int(round(avg)) if avg is not None else 0,
    }
