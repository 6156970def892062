# Admin call monitoring: join preconditions, tagged signaling relay, leave and disconnect cleanup.
from __future__ import annotations

import pytest

from estatechat.errors import AuthorizationError, NotFoundError, StateConflictError
from estatechat.realtime.rooms import CallMonitorRoom


@pytest.fixture()
def live_call(hub, make_user, make_appointment, connect):
    buyer = make_user("buyer@example.com")
    seller = make_user("seller@example.com")
    admin = make_user("mod@example.com", role="admin", approval="approved")
    appt = make_appointment(buyer, seller)
    buyer_tab, seller_tab, admin_tab = connect(buyer), connect(seller), connect(admin)
    session = hub.calls.initiate(buyer_tab, appt.id, seller.id, "video")
    return session, buyer_tab, seller_tab, admin_tab


# Monitoring needs an approved admin and an accepted call with the receiver attached
def test_join_preconditions(hub, live_call, make_user, connect):
    session, buyer_tab, seller_tab, admin_tab = live_call

    with pytest.raises(StateConflictError):
        hub.monitor.join(admin_tab, session.call_id)
    hub.calls.accept(seller_tab, session.call_id)

    with pytest.raises(AuthorizationError):
        hub.monitor.join(buyer_tab, session.call_id)
    pending = connect(make_user("pending@example.com", role="admin", approval="pending"))
    with pytest.raises(AuthorizationError):
        hub.monitor.join(pending, session.call_id)
    with pytest.raises(NotFoundError):
        hub.monitor.join(admin_tab, "CALL_0_gone")


# Joining tells the admin the call details and asks each participant for a mirrored stream
def test_join_requests_streams_from_both_sides(hub, live_call):
    session, buyer_tab, seller_tab, admin_tab = live_call
    hub.calls.accept(seller_tab, session.call_id)

    hub.monitor.join(admin_tab, session.call_id)

    started = admin_tab.events("admin-monitor-started")
    assert started[0]["call_id"] == session.call_id
    assert started[0]["start_time"] is not None
    caller_req = buyer_tab.events("admin-monitor-request")[0]
    receiver_req = seller_tab.events("admin-monitor-request")[0]
    assert caller_req["role"] == "caller"
    assert receiver_req["role"] == "receiver"
    assert caller_req["admin_socket_id"] == receiver_req["admin_socket_id"] == admin_tab.sid
    assert hub.router.is_member(CallMonitorRoom(session.call_id), admin_tab)


# Offers go participant -> admin, answers admin -> participant, candidates both ways, all tagged
def test_monitor_signaling_relay(hub, live_call):
    session, buyer_tab, seller_tab, admin_tab = live_call
    hub.calls.accept(seller_tab, session.call_id)
    hub.monitor.join(admin_tab, session.call_id)

    hub.monitor.relay_offer(seller_tab, session.call_id, admin_tab.sid, {"sdp": "mirror"})
    offer = admin_tab.events("webrtc-offer-monitor")[0]
    assert offer["role"] == "receiver"
    assert offer["admin_socket_id"] == admin_tab.sid

    hub.monitor.relay_answer(admin_tab, session.call_id, "receiver", {"sdp": "admin"})
    assert seller_tab.events("webrtc-answer-monitor")[0]["answer"] == {"sdp": "admin"}
    assert buyer_tab.events("webrtc-answer-monitor") == []

    hub.monitor.relay_candidate(buyer_tab, session.call_id, {"candidate": "p"}, admin_socket_id=admin_tab.sid)
    assert admin_tab.events("ice-candidate-monitor")[0]["role"] == "caller"
    hub.monitor.relay_candidate(admin_tab, session.call_id, {"candidate": "a"}, role="caller")
    assert buyer_tab.events("ice-candidate-monitor")[0]["candidate"] == {"candidate": "a"}

    with pytest.raises(StateConflictError):
        hub.monitor.relay_candidate(admin_tab, session.call_id, {"candidate": "a"})
    with pytest.raises(NotFoundError):
        hub.monitor.relay_offer(buyer_tab, session.call_id, "not-a-monitor", {"sdp": "x"})


# Leaving notifies both participants; a second leave is a no-op
def test_leave(hub, live_call):
    session, buyer_tab, seller_tab, admin_tab = live_call
    hub.calls.accept(seller_tab, session.call_id)
    hub.monitor.join(admin_tab, session.call_id)

    assert hub.monitor.leave(admin_tab, session.call_id) is True
    assert buyer_tab.events("admin-monitor-leave") == [{"call_id": session.call_id, "admin_socket_id": admin_tab.sid}]
    assert len(seller_tab.events("admin-monitor-leave")) == 1
    assert hub.monitor.leave(admin_tab, session.call_id) is False
    assert session.monitors == {}


# A monitoring admin whose socket drops is detached; the call itself continues
def test_monitor_disconnect_detaches(hub, live_call):
    session, buyer_tab, seller_tab, admin_tab = live_call
    hub.calls.accept(seller_tab, session.call_id)
    hub.monitor.join(admin_tab, session.call_id)

    hub.disconnect(admin_tab)

    assert session.monitors == {}
    assert hub.calls.get_session(session.call_id) is session
    assert buyer_tab.events("call-ended") == []
