# Presence test suite: online edges, inactivity timeout, multi-tab disconnects and status lookups.
from __future__ import annotations

from datetime import timedelta

from conftest import T0


# First ping is the online edge and is broadcast to every connected client; later pings are not
def test_first_ping_broadcasts_online_edge(hub, connect, make_user):
    alice = make_user("alice@example.com")
    observer = connect()
    tab = connect(alice)

    assert hub.presence.mark_active(alice.id, tab) is True
    assert hub.presence.mark_active(alice.id, tab) is False

    assert observer.events("user-online-update") == [{"user_id": alice.id, "online": True, "last_seen": None}]
    assert hub.presence.is_online(alice.id)
    assert hub.presence.online_users() == [alice.id]


# Each ping re-arms the inactivity timer; silence for the full timeout goes offline with last_seen
def test_inactivity_timeout_marks_offline(hub, scheduler, connect, make_user):
    alice = make_user("alice@example.com")
    observer = connect()
    tab = connect(alice)

    hub.presence.mark_active(alice.id, tab)
    scheduler.advance(4)
    hub.presence.mark_active(alice.id, tab)
    scheduler.advance(4)
    assert hub.presence.is_online(alice.id)

    scheduler.advance(1.5)
    status = hub.presence.check_online(alice.id)
    assert status.online is False
    assert status.last_seen == T0 + timedelta(seconds=9)

    offline = observer.events("user-online-update")[-1]
    assert offline["online"] is False
    assert offline["last_seen"] == (T0 + timedelta(seconds=9)).isoformat()


# Closing an older tab keeps the user online; closing the tab that pinged last takes them offline
def test_disconnect_only_offline_for_last_pinging_tab(hub, connect, make_user):
    alice = make_user("alice@example.com")
    tab1 = connect(alice)
    tab2 = connect(alice)
    hub.presence.mark_active(alice.id, tab1)
    hub.presence.mark_active(alice.id, tab2)

    hub.disconnect(tab1)
    assert hub.presence.is_online(alice.id)

    hub.disconnect(tab2)
    assert not hub.presence.is_online(alice.id)
    assert hub.presence.check_online(alice.id).last_seen is not None


# A user that never pinged reads as offline with no last_seen
def test_check_online_unknown_user(hub):
    status = hub.presence.check_online(4242)
    assert status.online is False
    assert status.as_payload(4242) == {"user_id": 4242, "online": False, "last_seen": None}


# Going offline after the timer fired leaves no timer behind
def test_offline_cancels_timer(hub, scheduler, connect, make_user):
    alice = make_user("alice@example.com")
    tab = connect(alice)
    hub.presence.mark_active(alice.id, tab)
    assert scheduler.pending == 1

    hub.disconnect(tab)
    assert scheduler.pending == 0
