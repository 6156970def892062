# Background sweepers for periodic maintenance tasks (e.g., call history rows orphaned by a restart).
# These utilities are invoked from startup threads or scheduler jobs.
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from .db import SessionLocal
from . import models
from .services.call_history import RINGING_STATUSES
from .timeutils import as_utc, utcnow

logger = logging.getLogger("estatechat.sweepers")

# Anything still ringing after this long has no live session behind it
STALE_CALL_SECONDS = int(os.getenv("STALE_CALL_SECONDS", "120"))


def sweep_stale_calls(
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    stale_after_seconds: int = STALE_CALL_SECONDS,
) -> int:
    """
    Mark call history rows stuck in 'initiated' / 'ringing' as 'missed'.

    Semantics:
    - Only processes rows placed more than stale_after_seconds ago.
    - Stamps end_time; no duration is recorded for calls that never connected.
    - Idempotent across repeated runs.
    - Accepts an optional Session; otherwise creates and cleans up its own.

    Returns:
    - Number of rows updated.
    """
    # Track whether this call created its own DB session (so we can close it)
    created_session = False
    if db is None:
        db = SessionLocal()
        created_session = True

    try:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=stale_after_seconds)
        items = (
            db.query(models.CallHistory)
            .filter(models.CallHistory.status.in_(RINGING_STATUSES))
            .all()
        )
        updated = 0
        for obj in items:
            # Some backends (e.g., SQLite) return naive datetimes; treat stored values as UTC.
            placed = as_utc(obj.placed_at)
            if placed is not None and placed < cutoff:
                obj.status = "missed"
                obj.end_time = now
                updated += 1
        if updated:
            db.commit()
            logger.info("sweepers.stale_calls", extra={"count": updated})
        return updated
    except Exception:
        # Roll back partial work, then bubble up the error
        db.rollback()
        raise
    finally:
        # Close the session only if this function created it
        if created_session:
            db.close()
