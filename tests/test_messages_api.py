# Messages HTTP API test suite: send, ordering, pagination, authorization and the admin-only views.
from __future__ import annotations

from fastapi.testclient import TestClient
import pytest


@pytest.fixture()
def chat(make_user, make_appointment):
    buyer = make_user("buyer@example.com")
    seller = make_user("seller@example.com")
    admin = make_user("mod@example.com", role="admin", approval="approved")
    appt = make_appointment(buyer, seller)
    return buyer, seller, admin, appt


def post_text(client: TestClient, appt_id: int, headers: dict, body: str) -> dict:
    r = client.post(f"/api/v1/appointments/{appt_id}/messages", headers=headers, json={"message": body})
    assert r.status_code == 201, r.text
    return r.json()


# Send then list: the newest page by default, since_id paginates strictly forward
def test_send_and_history_pagination(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    ids = [post_text(client, appt.id, headers_for(buyer), f"hello {i}")["id"] for i in range(3)]

    r1 = client.get(f"/api/v1/appointments/{appt.id}/messages?limit=2", headers=headers_for(seller))
    assert r1.status_code == 200, r1.text
    assert [m["id"] for m in r1.json()] == ids[1:]

    r2 = client.get(
        f"/api/v1/appointments/{appt.id}/messages?since_id={ids[1]}", headers=headers_for(seller)
    )
    assert [m["id"] for m in r2.json()] == ids[2:]
    assert r2.json()[0]["status"] == "sent"


# Outsiders get 403 with the shared error body; missing appointments 404
def test_outsider_forbidden(client: TestClient, chat, make_user, headers_for):
    buyer, seller, admin, appt = chat
    stranger = make_user("stranger@example.com")

    r = client.get(f"/api/v1/appointments/{appt.id}/messages", headers=headers_for(stranger))
    assert r.status_code == 403
    assert r.json() == {"success": False, "message": "Not authorized to access this chat", "code": "forbidden"}

    r = client.get("/api/v1/appointments/9999/messages", headers=headers_for(buyer))
    assert r.status_code == 404

    r = client.get(f"/api/v1/appointments/{appt.id}/messages")
    assert r.status_code == 401


# A text message may not carry media, and a media message needs its own URL
def test_payload_validation(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    url = f"/api/v1/appointments/{appt.id}/messages"

    r = client.post(url, headers=headers_for(buyer), json={"message": "hi", "image_url": "https://cdn/x.jpg"})
    assert r.status_code == 422
    r = client.post(url, headers=headers_for(buyer), json={"type": "audio", "message": ""})
    assert r.status_code == 422
    r = client.post(url, headers=headers_for(buyer), json={"message": "   "})
    assert r.status_code == 422

    r = client.post(
        url,
        headers=headers_for(buyer),
        json={"type": "document", "document_url": "https://cdn/deed.pdf", "document_name": "deed.pdf"},
    )
    assert r.status_code == 201, r.text
    assert r.json()["document_name"] == "deed.pdf"


# Deleted content is masked for participants and visible to admins
def test_deleted_original_visible_to_admin_only(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    msg = post_text(client, appt.id, headers_for(buyer), "my phone is 555-0100")

    r = client.delete(f"/api/v1/appointments/{appt.id}/messages/{msg['id']}", headers=headers_for(buyer))
    assert r.status_code == 200, r.text
    assert r.json()["success"] is True

    seller_view = client.get(f"/api/v1/appointments/{appt.id}/messages", headers=headers_for(seller)).json()[0]
    admin_view = client.get(f"/api/v1/appointments/{appt.id}/messages", headers=headers_for(admin)).json()[0]
    assert seller_view["deleted"] is True
    assert seller_view["message"] == ""
    assert seller_view["original_message"] is None
    assert admin_view["original_message"] == "my phone is 555-0100"


# Edit by someone other than the sender is forbidden
def test_edit_by_other_forbidden(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    msg = post_text(client, appt.id, headers_for(buyer), "see you at 5")
    url = f"/api/v1/appointments/{appt.id}/messages/{msg['id']}"

    assert client.patch(url, headers=headers_for(seller), json={"message": "see you at 6"}).status_code == 403
    r = client.patch(url, headers=headers_for(buyer), json={"message": "see you at 6"})
    assert r.status_code == 200
    assert r.json()["edited"] is True


# Bulk delete reports which ids were actually deleted
def test_bulk_delete(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    mine = post_text(client, appt.id, headers_for(buyer), "one")
    theirs = post_text(client, appt.id, headers_for(seller), "two")

    r = client.post(
        f"/api/v1/appointments/{appt.id}/messages/bulk-delete",
        headers=headers_for(buyer),
        json={"message_ids": [mine["id"], theirs["id"]]},
    )
    assert r.status_code == 200, r.text
    assert r.json()["deleted_ids"] == [mine["id"]]


# Admin clear: wrong password is 400 invalid_credentials, an empty chat is a state conflict
def test_clear_chat(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    post_text(client, appt.id, headers_for(buyer), "one")
    url = f"/api/v1/appointments/{appt.id}/messages/clear"

    assert client.post(url, headers=headers_for(buyer), json={"password": "changeme123"}).status_code == 403

    r = client.post(url, headers=headers_for(admin), json={"password": "nope-nope"})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_credentials"

    r = client.post(url, headers=headers_for(admin), json={"password": "changeme123"})
    assert r.status_code == 200, r.text
    assert r.json()["removed"] == 1

    r = client.post(url, headers=headers_for(admin), json={"password": "changeme123"})
    assert r.status_code == 400
    assert r.json()["code"] == "state_conflict"


# Pin, star and react round-trip through the API views
def test_pin_star_react(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    msg = post_text(client, appt.id, headers_for(seller), "Open house on Saturday")
    base = f"/api/v1/appointments/{appt.id}/messages"

    r = client.post(f"{base}/{msg['id']}/pin", headers=headers_for(buyer), json={"pinned": True, "pin_duration": "7days"})
    assert r.status_code == 200, r.text
    assert r.json()["pin_duration"] == "7days"
    assert [m["id"] for m in client.get(f"{base}/pinned", headers=headers_for(seller)).json()] == [msg["id"]]

    r = client.post(f"{base}/{msg['id']}/pin", headers=headers_for(buyer), json={"pinned": True})
    assert r.status_code == 400

    client.post(f"{base}/{msg['id']}/star", headers=headers_for(buyer), json={"starred": True})
    assert [m["id"] for m in client.get(f"{base}/starred", headers=headers_for(buyer)).json()] == [msg["id"]]
    assert client.get(f"{base}/starred", headers=headers_for(seller)).json() == []

    r = client.post(f"{base}/{msg['id']}/react", headers=headers_for(buyer), json={"emoji": "👍"})
    assert [(x["user_id"], x["emoji"]) for x in r.json()["reactions"]] == [(buyer.id, "👍")]


# Read receipts count only the other side's unread messages
def test_mark_read(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    post_text(client, appt.id, headers_for(buyer), "one")
    post_text(client, appt.id, headers_for(buyer), "two")
    post_text(client, appt.id, headers_for(seller), "three")

    r = client.post(f"/api/v1/appointments/{appt.id}/messages/read", headers=headers_for(seller))
    assert r.json() == {"success": True, "updated": 2}
    r = client.post(f"/api/v1/appointments/{appt.id}/messages/read", headers=headers_for(seller))
    assert r.json()["updated"] == 0


# Remove-for-me only changes the caller's history
def test_remove_for_me(client: TestClient, chat, headers_for):
    buyer, seller, admin, appt = chat
    msg = post_text(client, appt.id, headers_for(seller), "ignore this")

    r = client.post(f"/api/v1/appointments/{appt.id}/messages/{msg['id']}/remove-for-me", headers=headers_for(buyer))
    assert r.status_code == 200
    assert client.get(f"/api/v1/appointments/{appt.id}/messages", headers=headers_for(buyer)).json() == []
    assert len(client.get(f"/api/v1/appointments/{appt.id}/messages", headers=headers_for(seller)).json()) == 1
