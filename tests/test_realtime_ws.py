# WebSocket test suite: handshake auth, frame validation, presence broadcast and a full call over sockets.
from __future__ import annotations

import json
from typing import Tuple

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from estatechat.realtime.transport import TokenBucket


# Helper: create a user and return (access_token, user JSON)
def signup(client: TestClient, email: str, username: str, password: str = "changeme123") -> Tuple[str, dict]:
    r = client.post("/auth/signup", json={"email": email, "username": username, "password": password})
    assert r.status_code == 201, r.text
    data = r.json()
    return data["access_token"], data["user"]


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# Helper: the buyer (token holder) books an appointment with the seller
def book(client: TestClient, buyer_token: str, seller_id: int) -> dict:
    r = client.post(
        "/api/v1/appointments",
        headers=auth_headers(buyer_token),
        json={"seller_id": seller_id, "property_name": "Canal House"},
    )
    assert r.status_code == 201, r.text
    return r.json()


def send(ws, event: str, **data) -> None:
    ws.send_text(json.dumps({"event": event, "data": data}))


def receive(ws) -> dict:
    return json.loads(ws.receive_text())


# Connecting with a valid token greets the client with its socket id and user id
def test_connect_with_token(client: TestClient):
    token, user = signup(client, "alice@example.com", "alice")
    with client.websocket_connect(f"/ws/realtime?token={token}") as ws:
        hello = receive(ws)
        assert hello["event"] == "connected"
        assert hello["data"]["user_id"] == user["id"]
        assert hello["data"]["sid"]


# An invalid token is refused at the handshake
def test_invalid_token_refused(client: TestClient):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/realtime?token=not-a-jwt"):
            pass


# Anonymous sockets can look up presence but cannot announce it
def test_anonymous_socket_cannot_ping(client: TestClient):
    with client.websocket_connect("/ws/realtime") as ws:
        assert receive(ws)["data"]["user_id"] is None
        send(ws, "presence-ping")
        err = receive(ws)
        assert err == {"event": "error", "data": {"code": "forbidden", "message": "Authentication required"}}

        send(ws, "check-user-online", user_id=99)
        status = receive(ws)
        assert status["event"] == "user-online-status"
        assert status["data"] == {"user_id": 99, "online": False, "last_seen": None}


# Malformed frames come back as error events and the connection stays usable
def test_bad_frames_return_errors(client: TestClient):
    token, _ = signup(client, "bob@example.com", "bob")
    with client.websocket_connect(f"/ws/realtime?token={token}") as ws:
        receive(ws)

        ws.send_text("{not json")
        assert receive(ws)["data"]["code"] == "invalid_json"

        send(ws, "teleport")
        assert receive(ws)["data"]["code"] == "unknown_event"

        send(ws, "call-initiate", appointment_id=1)
        err = receive(ws)
        assert err["event"] == "call-error"
        assert err["data"]["code"] == "invalid_payload"

        send(ws, "call-accept", call_id="CALL_0_nothing")
        err = receive(ws)
        assert err["event"] == "call-error"
        assert err["data"] == {"code": "not_found", "message": "Call is no longer available", "call_id": "CALL_0_nothing"}


# A presence ping is broadcast to every connected client
def test_presence_ping_broadcast(client: TestClient):
    token, user = signup(client, "carol@example.com", "carol")
    with client.websocket_connect("/ws/realtime") as observer:
        receive(observer)
        with client.websocket_connect(f"/ws/realtime?token={token}") as ws:
            receive(ws)
            send(ws, "presence-ping")
            mine = receive(ws)
            seen = receive(observer)
            for frame in (mine, seen):
                assert frame["event"] == "user-online-update"
                assert frame["data"] == {"user_id": user["id"], "online": True, "last_seen": None}


# Typing updates reach the other viewers of the appointment, never the typist
def test_typing_requires_join(client: TestClient):
    buyer_token, _ = signup(client, "buyer@example.com", "buyer")
    seller_token, seller = signup(client, "seller@example.com", "seller")
    appt = book(client, buyer_token, seller["id"])

    with client.websocket_connect(f"/ws/realtime?token={buyer_token}") as buyer_ws, \
         client.websocket_connect(f"/ws/realtime?token={seller_token}") as seller_ws:
        receive(buyer_ws)
        receive(seller_ws)

        send(buyer_ws, "typing", appointment_id=appt["id"])
        assert receive(buyer_ws)["data"]["code"] == "forbidden"

        send(seller_ws, "appointment-join", appointment_id=appt["id"])
        # Frames on one socket are handled in order; the reply proves the join landed
        send(seller_ws, "check-user-online", user_id=seller["id"])
        assert receive(seller_ws)["event"] == "user-online-status"
        send(buyer_ws, "appointment-join", appointment_id=appt["id"])
        send(buyer_ws, "typing", appointment_id=appt["id"], is_typing=True)
        frame = receive(seller_ws)
        assert frame["event"] == "typing"
        assert frame["data"]["is_typing"] is True


# Full call over sockets: initiate, ring, accept, end
def test_call_roundtrip_over_sockets(client: TestClient):
    buyer_token, buyer = signup(client, "buyer@example.com", "buyer")
    seller_token, seller = signup(client, "seller@example.com", "seller")
    appt = book(client, buyer_token, seller["id"])

    with client.websocket_connect(f"/ws/realtime?token={buyer_token}") as buyer_ws, \
         client.websocket_connect(f"/ws/realtime?token={seller_token}") as seller_ws:
        receive(buyer_ws)
        receive(seller_ws)

        send(buyer_ws, "call-initiate", appointment_id=appt["id"], receiver_id=seller["id"], call_type="audio")
        incoming = receive(seller_ws)
        assert incoming["event"] == "incoming-call"
        call_id = incoming["data"]["call_id"]
        initiated = receive(buyer_ws)
        assert initiated["event"] == "call-initiated"
        assert initiated["data"]["call_id"] == call_id

        send(seller_ws, "call-accept", call_id=call_id)
        accepted_caller = receive(buyer_ws)
        accepted_receiver = receive(seller_ws)
        assert accepted_caller["event"] == accepted_receiver["event"] == "call-accepted"
        assert accepted_caller["data"]["start_time"] == accepted_receiver["data"]["start_time"]

        send(buyer_ws, "call-end", call_id=call_id)
        assert receive(buyer_ws)["event"] == "call-ended"
        ended = receive(seller_ws)
        assert ended["event"] == "call-ended"
        assert ended["data"]["ended_by"] == buyer["id"]
        assert ended["data"]["force_ended"] is False

    r = client.get("/api/v1/calls/history", headers=auth_headers(seller_token))
    assert r.status_code == 200, r.text
    assert [c["status"] for c in r.json()["calls"]] == ["ended"]


# The per-connection bucket allows a burst, then refuses until it refills
def test_token_bucket_burst():
    bucket = TokenBucket(rate=0.0, capacity=3)
    assert [bucket.consume() for _ in range(4)] == [True, True, True, False]
