# Sweeper tests: call rows left ringing by a lost session become missed once they are old enough.
from __future__ import annotations

from datetime import timedelta

import pytest

from estatechat import models
from estatechat.sweepers import sweep_stale_calls

from conftest import T0


@pytest.fixture()
def appt(make_user, make_appointment):
    return make_appointment(make_user("buyer@example.com"), make_user("seller@example.com"))


def add_call(db, appt, call_id: str, status: str, placed_seconds_ago: int) -> None:
    db.add(
        models.CallHistory(
            call_id=call_id,
            appointment_id=appt.id,
            caller_id=appt.buyer_id,
            receiver_id=appt.seller_id,
            call_type="audio",
            status=status,
            placed_at=T0 - timedelta(seconds=placed_seconds_ago),
        )
    )
    db.commit()


def status_of(db, call_id: str) -> models.CallHistory:
    return db.query(models.CallHistory).filter(models.CallHistory.call_id == call_id).one()


# Only old ringing rows are swept; a second run finds nothing left to do
def test_sweep_stale_calls(db, appt):
    add_call(db, appt, "CALL_old_ringing", "ringing", 600)
    add_call(db, appt, "CALL_old_initiated", "initiated", 300)
    add_call(db, appt, "CALL_fresh", "ringing", 30)
    add_call(db, appt, "CALL_live", "accepted", 600)

    assert sweep_stale_calls(db, now=T0, stale_after_seconds=120) == 2

    for call_id in ("CALL_old_ringing", "CALL_old_initiated"):
        row = status_of(db, call_id)
        assert row.status == "missed"
        assert row.end_time is not None
        assert row.duration is None
    assert status_of(db, "CALL_fresh").status == "ringing"
    assert status_of(db, "CALL_live").status == "accepted"

    assert sweep_stale_calls(db, now=T0, stale_after_seconds=120) == 0


# Without an explicit session the sweeper opens and closes its own
def test_sweep_with_own_session(db, appt):
    add_call(db, appt, "CALL_old", "initiated", 1000)
    assert sweep_stale_calls(now=T0) == 1
    db.expire_all()
    assert status_of(db, "CALL_old").status == "missed"
