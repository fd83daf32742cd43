from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from openbroadcast import api, messaging
from openbroadcast.messaging import FanoutPolicy
from openbroadcast.storage import fetch_root_token


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _make_event(client, title: str = "Launch Party") -> tuple[str, str]:
    response = client.post("/api/v1/events", json={"title": title})
    assert response.status_code == 201
    data = response.json()
    return data["event"]["id"], data["admin_token"]


def _add_attendee(client, event_id, token, email, **extra) -> str:
    response = client.post(
        f"/api/v1/events/{event_id}/attendees",
        json={"email": email, **extra},
        headers=_auth(token),
    )
    assert response.status_code == 201, response.text
    return response.json()["attendee"]["id"]


def _add_invite(client, event_id, token, email, **extra) -> str:
    response = client.post(
        f"/api/v1/events/{event_id}/invites",
        json={"email": email, **extra},
        headers=_auth(token),
    )
    assert response.status_code == 201, response.text
    return response.json()["invite"]["id"]


def _send(client, event_id, token, **payload):
    body = {"title": "Hello", "body": "See you there."}
    body.update(payload)
    return client.post(
        f"/api/v1/events/{event_id}/messages", json=body, headers=_auth(token)
    )


def test_create_event_returns_admin_token(client):
    event_id, token = _make_event(client)
    assert event_id
    assert len(token) > 20


def test_admin_routes_require_bearer_token(client):
    event_id, token = _make_event(client)
    url = f"/api/v1/events/{event_id}/attendees"

    missing = client.post(url, json={"email": "a@example.com"})
    assert missing.status_code == 401
    assert missing.json()["detail"] == "Missing bearer token"

    wrong = client.post(url, json={"email": "a@example.com"}, headers=_auth("nope"))
    assert wrong.status_code == 403

    root = client.post(
        url, json={"email": "a@example.com"}, headers=_auth(fetch_root_token())
    )
    assert root.status_code == 201

    other_event_id, _ = _make_event(client, title="Other")
    foreign = client.post(
        f"/api/v1/events/{other_event_id}/attendees",
        json={"email": "b@example.com"},
        headers=_auth(token),
    )
    assert foreign.status_code == 403


def test_duplicate_attendee_is_rejected(client):
    event_id, token = _make_event(client)
    _add_attendee(client, event_id, token, "dup@example.com")
    response = client.post(
        f"/api/v1/events/{event_id}/attendees",
        json={"email": "DUP@example.com"},
        headers=_auth(token),
    )
    assert response.status_code == 400


def test_invalid_invite_status_is_rejected(client):
    event_id, token = _make_event(client)
    response = client.post(
        f"/api/v1/events/{event_id}/invites",
        json={"email": "x@example.com", "status": "maybe"},
        headers=_auth(token),
    )
    assert response.status_code == 400


def test_broadcast_delivers_to_attendees_and_queues_for_invites(client):
    event_id, token = _make_event(client)
    attendee_id = _add_attendee(client, event_id, token, "guest@example.com")
    _add_invite(client, event_id, token, "invitee@example.com")

    response = _send(client, event_id, token)
    assert response.status_code == 201
    data = response.json()
    assert data["created"] == 2
    assert data["delivered"] == 1
    assert data["queued"] == 1
    assert data["failed"] == 0
    assert data["message"]["delivery_state"] == "delivered"

    mobile = client.get(f"/api/v1/events/{event_id}/mobile-messages").json()
    assert mobile["total"] == 1
    assert mobile["messages"][0]["attendee_id"] == attendee_id
    assert "delivery_state" not in mobile["messages"][0]

    organizer = client.get(
        f"/api/v1/events/{event_id}/messages", headers=_auth(token)
    ).json()
    assert sorted(m["delivery_state"] for m in organizer["messages"]) == [
        "delivered",
        "queued",
    ]


def test_broadcast_without_recipients_returns_null_message(client):
    event_id, token = _make_event(client)
    response = _send(client, event_id, token, audience="accepted")
    assert response.status_code == 201
    assert response.json()["message"] is None
    assert response.json()["created"] == 0


def test_accepting_invite_releases_queued_messages(client):
    event_id, token = _make_event(client)
    invite_id = _add_invite(client, event_id, token, "late@example.com")
    _send(client, event_id, token, audience="invited", title="Agenda")
    _send(client, event_id, token, invite_id=invite_id, title="Personal note")
    assert client.get(f"/api/v1/events/{event_id}/mobile-messages").json()["total"] == 0

    accepted = client.post(f"/api/v1/events/{event_id}/invites/{invite_id}/accept")
    assert accepted.status_code == 200
    data = accepted.json()
    assert data["promoted"] == 2
    assert data["already_accepted"] is False
    assert data["invite"]["status"] == "accepted"
    attendee_id = data["attendee"]["id"]

    mobile = client.get(
        f"/api/v1/events/{event_id}/mobile-messages",
        params={"attendee_id": attendee_id},
    ).json()
    assert {m["title"] for m in mobile["messages"]} == {"Agenda", "Personal note"}

    again = client.post(f"/api/v1/events/{event_id}/invites/{invite_id}/accept")
    assert again.json()["promoted"] == 0
    assert again.json()["already_accepted"] is True
    assert again.json()["attendee"]["id"] == attendee_id


def test_accept_unknown_invite_returns_404(client):
    event_id, _ = _make_event(client)
    response = client.post(f"/api/v1/events/{event_id}/invites/missing/accept")
    assert response.status_code == 404


def test_message_with_both_recipients_is_rejected(client):
    event_id, token = _make_event(client)
    attendee_id = _add_attendee(client, event_id, token, "a@example.com")
    invite_id = _add_invite(client, event_id, token, "i@example.com")

    response = _send(client, event_id, token, attendee_id=attendee_id, invite_id=invite_id)
    assert response.status_code == 400

    organizer = client.get(
        f"/api/v1/events/{event_id}/messages", headers=_auth(token)
    ).json()
    assert organizer["messages"] == []


def test_message_with_unknown_audience_is_rejected(client):
    event_id, token = _make_event(client)
    assert _send(client, event_id, token, audience="everyone").status_code == 400


def test_message_to_unknown_recipient_returns_404(client):
    event_id, token = _make_event(client)
    assert _send(client, event_id, token, attendee_id="missing").status_code == 404
    assert _send(client, event_id, token, invite_id="missing").status_code == 404


def test_unknown_event_returns_404(client):
    response = client.get("/api/v1/events/missing/mobile-messages")
    assert response.status_code == 404
    assert response.json()["detail"] == "Event not found"


def test_organizer_listing_is_paginated(client):
    event_id, token = _make_event(client)
    attendee_id = _add_attendee(client, event_id, token, "a@example.com")
    for index in range(3):
        _send(client, event_id, token, attendee_id=attendee_id, title=f"Note {index}")

    first = client.get(
        f"/api/v1/events/{event_id}/messages",
        params={"per_page": 2},
        headers=_auth(token),
    ).json()
    assert len(first["messages"]) == 2
    assert first["pagination"]["total"] == 3
    assert first["pagination"]["total_pages"] == 2
    assert first["pagination"]["has_next"] is True
    assert first["pagination"]["next_page"] == 2

    second = client.get(
        f"/api/v1/events/{event_id}/messages",
        params={"per_page": 2, "page": 2},
        headers=_auth(token),
    ).json()
    assert len(second["messages"]) == 1
    assert second["pagination"]["has_prev"] is True
    seen = {m["id"] for m in first["messages"]} | {m["id"] for m in second["messages"]}
    assert len(seen) == 3


def test_organizer_can_edit_and_delete_messages(client):
    event_id, token = _make_event(client)
    invite_id = _add_invite(client, event_id, token, "i@example.com")
    message_id = _send(client, event_id, token, invite_id=invite_id).json()["message"][
        "id"
    ]
    url = f"/api/v1/events/{event_id}/messages/{message_id}"

    fetched = client.get(url, headers=_auth(token))
    assert fetched.status_code == 200
    assert fetched.json()["message"]["delivery_state"] == "queued"

    patched = client.patch(url, json={"title": "Updated"}, headers=_auth(token))
    assert patched.status_code == 200
    assert patched.json()["message"]["title"] == "Updated"
    assert patched.json()["message"]["delivery_state"] == "queued"

    deleted = client.delete(url, headers=_auth(token))
    assert deleted.status_code == 204
    assert client.get(url, headers=_auth(token)).status_code == 404


def test_recipient_cannot_read_queued_message(client):
    event_id, token = _make_event(client)
    invite_id = _add_invite(client, event_id, token, "i@example.com")
    message_id = _send(client, event_id, token, invite_id=invite_id).json()["message"][
        "id"
    ]

    response = client.get(f"/api/v1/events/{event_id}/mobile-messages/{message_id}")
    assert response.status_code == 404
    ack = client.post(
        f"/api/v1/events/{event_id}/mobile-messages/{message_id}/acknowledge"
    )
    assert ack.status_code == 404


def test_recipient_acknowledges_message(client):
    event_id, token = _make_event(client)
    attendee_id = _add_attendee(client, event_id, token, "a@example.com")
    message_id = _send(client, event_id, token, attendee_id=attendee_id).json()[
        "message"
    ]["id"]
    url = f"/api/v1/events/{event_id}/mobile-messages/{message_id}"

    assert client.get(url).json()["message"]["unread"] is True
    ack = client.post(f"{url}/acknowledge")
    assert ack.status_code == 200
    assert ack.json() == {"ok": True}
    assert client.get(url).json()["message"]["unread"] is False


def _fail_for_email(monkeypatch, email):
    original = messaging._new_message

    def flaky_new_message(**kwargs):
        message = original(**kwargs)
        attendee = kwargs.get("attendee")
        if attendee is not None and attendee.email == email:
            message.title = None
        return message

    monkeypatch.setattr(messaging, "_new_message", flaky_new_message)


def test_best_effort_broadcast_reports_failed_recipients(client, monkeypatch):
    event_id, token = _make_event(client)
    _add_attendee(client, event_id, token, "ok@example.com")
    _add_attendee(client, event_id, token, "broken@example.com")
    _fail_for_email(monkeypatch, "broken@example.com")

    response = _send(client, event_id, token)
    assert response.status_code == 201
    assert response.json()["created"] == 1
    assert response.json()["failed"] == 1


def test_atomic_broadcast_rolls_back_on_failure(client, monkeypatch):
    event_id, token = _make_event(client)
    _add_attendee(client, event_id, token, "ok@example.com")
    broken_id = _add_attendee(client, event_id, token, "broken@example.com")
    _fail_for_email(monkeypatch, "broken@example.com")
    monkeypatch.setattr(api.app.state, "fanout_policy", FanoutPolicy(atomic=True))

    response = _send(client, event_id, token)
    assert response.status_code == 500
    assert response.json()["recipient_kind"] == "attendee"
    assert response.json()["recipient_id"] == broken_id

    organizer = client.get(
        f"/api/v1/events/{event_id}/messages", headers=_auth(token)
    ).json()
    assert organizer["pagination"]["total"] == 0


def test_organizer_lists_attendees_and_invites(client):
    event_id, token = _make_event(client)
    _add_attendee(client, event_id, token, "a@example.com", accepted=True)
    invite_id = _add_invite(client, event_id, token, "i@example.com")

    attendees = client.get(
        f"/api/v1/events/{event_id}/attendees", headers=_auth(token)
    ).json()["attendees"]
    assert [a["email"] for a in attendees] == ["a@example.com"]
    assert attendees[0]["accepted_at"] is not None

    invites = client.get(
        f"/api/v1/events/{event_id}/invites", headers=_auth(token)
    ).json()["invites"]
    assert [i["id"] for i in invites] == [invite_id]
    assert invites[0]["status"] == "pending"

    assert client.get(f"/api/v1/events/{event_id}/invites").status_code == 401
