from dataclasses import FrozenInstanceError

import pytest

from extensions import db
from models import Notification
from utils.connection_registry import ConnectionRegistry, format_sse
from utils.errors import ValidationError
from utils.notification_payloads import DocumentStatusPayload, InquiryPayload, dump_payload, load_payload
from utils.notification_service import EVENT_CREATED, notify


@pytest.fixture
def seeded(app, resident):
    resident_id, headers = resident
    with app.test_request_context():
        ids = [
            notify(resident_id, "system", f"Notice {i}", f"Body {i}").id
            for i in range(3)
        ]
    return resident_id, headers, ids


def test_list_and_unread_count(client, seeded):
    _, headers, ids = seeded
    body = client.get("/api/notifications", headers=headers).get_json()
    assert body["total"] == 3
    assert body["unreadCount"] == 3
    assert {n["id"] for n in body["notifications"]} == set(ids)
    assert client.get("/api/notifications/unread-count", headers=headers).get_json() == {"unreadCount": 3}


def test_mark_read_is_idempotent(client, seeded):
    _, headers, ids = seeded
    first = client.patch(f"/api/notifications/{ids[0]}/read", headers=headers)
    second = client.patch(f"/api/notifications/{ids[0]}/read", headers=headers)

    assert first.status_code == second.status_code == 200
    assert first.get_json()["notification"]["readAt"] == second.get_json()["notification"]["readAt"]
    assert second.get_json()["unreadCount"] == 2


def test_notifications_are_scoped_to_their_owner(client, seeded, make_user):
    _, _, ids = seeded
    _, other_headers = make_user("neighbor")
    assert client.patch(f"/api/notifications/{ids[0]}/read", headers=other_headers).status_code == 404
    assert client.delete(f"/api/notifications/{ids[0]}", headers=other_headers).status_code == 404
    assert client.get("/api/notifications", headers=other_headers).get_json()["total"] == 0


def test_mark_many_and_all(client, seeded):
    _, headers, ids = seeded
    some = client.patch("/api/notifications/read", json={"ids": ids[:2]}, headers=headers).get_json()
    assert some == {"updated": 2, "unreadCount": 1}
    rest = client.patch("/api/notifications/read", json={"all": True}, headers=headers).get_json()
    assert rest == {"updated": 1, "unreadCount": 0}


def test_delete_one_and_many(app, client, seeded):
    resident_id, headers, ids = seeded
    assert client.delete(f"/api/notifications/{ids[0]}", headers=headers).status_code == 200
    body = client.delete("/api/notifications", json={"ids": ids[1:]}, headers=headers).get_json()
    assert body["deleted"] == 2
    with app.app_context():
        assert Notification.query.filter_by(user_id=resident_id).count() == 0


def test_unread_filter_and_search(client, seeded):
    _, headers, ids = seeded
    client.patch(f"/api/notifications/{ids[0]}/read", headers=headers)
    unread = client.get("/api/notifications?unread=true", headers=headers).get_json()
    assert unread["total"] == 2
    found = client.get("/api/notifications", query_string={"search": "Notice 2"}, headers=headers).get_json()
    assert [n["title"] for n in found["notifications"]] == ["Notice 2"]


def test_guest_has_no_notification_inbox(client, make_guest):
    _, headers = make_guest()
    assert client.get("/api/notifications", headers=headers).status_code == 403


def test_live_connection_receives_one_event_per_notification(app, resident, staff, client):
    resident_id, resident_headers = resident
    _, staff_headers = staff
    connection = app.extensions["connection_registry"].add(resident_id)
    created = client.post(
        "/api/document-requests",
        json={"documentType": "residency_certificate", "purpose": "School enrollment"},
        headers=resident_headers,
    ).get_json()["request"]

    client.patch(f"/api/document-requests/{created['id']}/status", json={"status": "approved"}, headers=staff_headers)

    event, data = connection.next_event(0.5)
    assert event == EVENT_CREATED
    assert data["notification"]["data"]["request_id"] == created["id"]
    assert data["unreadCount"] == 1
    assert connection.next_event(0.05) is None


def test_registry_publish_and_close():
    registry = ConnectionRegistry(max_queue=2)
    first = registry.add("u1")
    registry.add("u1")
    assert registry.connection_count("u1") == 2
    assert registry.publish("u1", "ping", {"n": 1}) == 2
    assert registry.publish("nobody", "ping", {}) == 0

    registry.remove(first)
    assert registry.connection_count() == 1
    assert first.next_event(0.01) == ("ping", {"n": 1})

    registry.close()
    assert registry.connection_count() == 0


def test_full_queue_drops_instead_of_blocking():
    registry = ConnectionRegistry(max_queue=1)
    registry.add("u1")
    assert registry.publish("u1", "a", {}) == 1
    assert registry.publish("u1", "b", {}) == 0


def test_format_sse():
    assert format_sse("notification-created", {"id": "x"}) == 'event: notification-created\ndata: {"id": "x"}\n\n'


def test_payload_must_match_category():
    payload = InquiryPayload(inquiry_id="abc")
    with pytest.raises(ValidationError):
        dump_payload("documents", payload)
    stored = dump_payload("inquiries", payload)
    assert stored["kind"] == "inquiries"
    assert load_payload("inquiries", stored) == payload


def test_load_payload_ignores_unknown_keys():
    data = {"kind": "documents", "request_id": "r1", "status": "approved", "document_type": "id_application", "legacy": 1}
    assert load_payload("documents", data) == DocumentStatusPayload(
        request_id="r1", status="approved", document_type="id_application"
    )


def test_payloads_are_immutable():
    payload = DocumentStatusPayload(request_id="r1", status="approved", document_type="id_application")
    with pytest.raises(FrozenInstanceError):
        payload.status = "rejected"


def test_unknown_category_is_rejected(app, resident):
    resident_id, _ = resident
    with app.test_request_context():
        with pytest.raises(ValidationError):
            notify(resident_id, "marketing", "Hi", "There")
        assert db.session.query(Notification).count() == 0
