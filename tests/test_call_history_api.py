# Call history and admin call endpoints: listings, stats, the REST end fallback and termination notices.
from __future__ import annotations

from datetime import timedelta

from fastapi.testclient import TestClient
import pytest

from estatechat.services import call_history

from conftest import T0


@pytest.fixture()
def people(make_user, make_appointment):
    buyer = make_user("buyer@example.com")
    seller = make_user("seller@example.com")
    admin = make_user("mod@example.com", role="admin", approval="approved")
    appt = make_appointment(buyer, seller)
    return buyer, seller, admin, appt


def seed_call(db, appt, caller, receiver, call_id, call_type="audio", status="ended", duration=None):
    record = call_history.create_record(
        db,
        call_id=call_id,
        appointment_id=appt.id,
        caller_id=caller.id,
        receiver_id=receiver.id,
        call_type=call_type,
        placed_at=T0,
    )
    if status != "initiated":
        record.status = status
    if status == "ended":
        record.start_time = T0
        call_history.finish(record, "ended", T0 + timedelta(seconds=duration or 0))
    db.commit()
    return record


# Participants page through their own calls only
def test_my_history_paginates(client: TestClient, db, people, make_user, make_appointment, headers_for):
    buyer, seller, admin, appt = people
    for i in range(3):
        seed_call(db, appt, buyer, seller, f"CALL_{i}_a", duration=30)
    other = make_user("other@example.com")
    seed_call(db, make_appointment(other, seller), other, seller, "CALL_9_b")

    r = client.get("/api/v1/calls/history?page=1&limit=2", headers=headers_for(buyer))
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["total"] == 3
    assert body["total_pages"] == 2
    assert len(body["calls"]) == 2

    assert client.get("/api/v1/calls/history", headers=headers_for(seller)).json()["total"] == 4


# Appointment call log is for its participants and admins
def test_appointment_calls_authorization(client: TestClient, db, people, make_user, headers_for):
    buyer, seller, admin, appt = people
    seed_call(db, appt, buyer, seller, "CALL_1_a")
    stranger = make_user("stranger@example.com")

    assert client.get(f"/api/v1/calls/appointment/{appt.id}", headers=headers_for(stranger)).status_code == 403
    r = client.get(f"/api/v1/calls/appointment/{appt.id}", headers=headers_for(admin))
    assert [c["call_id"] for c in r.json()] == ["CALL_1_a"]


# Admin listing filters by type and status and carries platform stats
def test_admin_calls_with_stats(client: TestClient, db, people, headers_for):
    buyer, seller, admin, appt = people
    seed_call(db, appt, buyer, seller, "CALL_1_a", call_type="audio", duration=60)
    seed_call(db, appt, buyer, seller, "CALL_2_a", call_type="video", duration=120)
    seed_call(db, appt, seller, buyer, "CALL_3_a", call_type="video", status="missed")

    assert client.get("/api/v1/admin/calls", headers=headers_for(buyer)).status_code == 403

    r = client.get("/api/v1/admin/calls?call_type=video", headers=headers_for(admin))
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["total"] == 2
    assert body["stats"] == {"total": 3, "audio": 1, "video": 2, "missed": 1, "average_duration": 90}

    r = client.get("/api/v1/admin/calls?status=missed", headers=headers_for(admin))
    assert [c["call_id"] for c in r.json()["calls"]] == ["CALL_3_a"]


# REST end closes a live call and tells both sockets; repeating it is a no-op
def test_rest_end_live_call(client: TestClient, hub, clock, connect, people, headers_for):
    buyer, seller, admin, appt = people
    buyer_tab, seller_tab = connect(buyer), connect(seller)
    session = hub.calls.initiate(buyer_tab, appt.id, seller.id, "video")
    hub.calls.accept(seller_tab, session.call_id)
    clock.advance(42)

    active = client.get("/api/v1/admin/calls/active", headers=headers_for(admin)).json()
    assert [c["call_id"] for c in active] == [session.call_id]
    assert active[0]["status"] == "accepted"

    r = client.post("/api/v1/calls/end", headers=headers_for(buyer), json={"call_id": session.call_id})
    assert r.status_code == 200, r.text
    assert r.json()["message"] == "Call ended"
    assert r.json()["call"]["duration"] == 42
    assert len(seller_tab.events("call-ended")) == 1

    r = client.post("/api/v1/calls/end", headers=headers_for(buyer), json={"call_id": session.call_id})
    assert r.json()["message"] == "Call already ended"


# REST end without a live session: unknown is 404, a rejected call conflicts, a stale row is closed
def test_rest_end_without_session(client: TestClient, db, people, headers_for):
    buyer, seller, admin, appt = people
    seed_call(db, appt, buyer, seller, "CALL_1_rej", status="rejected")
    seed_call(db, appt, buyer, seller, "CALL_2_stale", status="ringing")

    assert client.post("/api/v1/calls/end", headers=headers_for(buyer), json={"call_id": "CALL_x"}).status_code == 404

    r = client.post("/api/v1/calls/end", headers=headers_for(buyer), json={"call_id": "CALL_1_rej"})
    assert r.status_code == 400
    assert r.json()["code"] == "state_conflict"

    r = client.post("/api/v1/calls/end", headers=headers_for(seller), json={"call_id": "CALL_2_stale"})
    assert r.status_code == 200, r.text
    assert r.json()["call"]["status"] == "ended"
    assert r.json()["call"]["duration"] == 0
    assert r.json()["call"]["ended_by"] == seller.id


# Termination notices go through the notifier; unknown calls are 404
def test_termination_notification(client: TestClient, db, notifier, people, headers_for):
    buyer, seller, admin, appt = people
    seed_call(db, appt, buyer, seller, "CALL_1_a", duration=75)

    r = client.post(
        "/api/v1/admin/calls/termination-notification",
        headers=headers_for(admin),
        json={"call_id": "CALL_1_a", "reason": "Abusive language"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["success"] is True
    kind, ctx = notifier.calls[-1]
    assert kind == "call_force_terminated"
    assert ctx.reason == "Abusive language"
    assert ctx.duration == 75
    assert ctx.caller.email == "buyer@example.com"

    r = client.post(
        "/api/v1/admin/calls/termination-notification",
        headers=headers_for(admin),
        json={"call_id": "CALL_missing"},
    )
    assert r.status_code == 404


# Calls hung up before anyone answered do not drag the average duration down
def test_admin_stats_average_skips_unconnected_calls(client: TestClient, db, people, headers_for):
    buyer, seller, admin, appt = people
    seed_call(db, appt, buyer, seller, "CALL_1_a", duration=60)
    seed_call(db, appt, buyer, seller, "CALL_2_a", duration=0)

    stats = client.get("/api/v1/admin/calls", headers=headers_for(admin)).json()["stats"]
    assert stats["total"] == 2
    assert stats["average_duration"] == 60
