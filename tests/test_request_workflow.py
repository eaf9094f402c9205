import re
from datetime import datetime

from extensions import db
from models import DocumentRequest, Notification, User
from utils.request_workflow import can_transition, next_document_number, transition


def _create(client, headers, document_type="barangay_clearance", purpose="Employment"):
    response = client.post(
        "/api/document-requests", json={"documentType": document_type, "purpose": purpose}, headers=headers
    )
    assert response.status_code == 201
    return response.get_json()["request"]


def _set_status(client, request_id, headers, status, **extra):
    return client.patch(f"/api/document-requests/{request_id}/status", json={"status": status, **extra}, headers=headers)


def test_create_sets_pending_status_and_fee(client, resident):
    _, headers = resident
    created = _create(client, headers)
    assert created["status"] == "pending"
    assert created["paymentStatus"] == "pending"
    assert created["paymentAmount"] == 50.0
    assert created["requester"]["barangayID"] == "BRGY-0001"

    free = _create(client, headers, document_type="indigency_certificate", purpose="Medical assistance")
    assert free["paymentStatus"] == "waived"


def test_create_rejects_unknown_type(client, resident):
    _, headers = resident
    response = client.post("/api/document-requests", json={"documentType": "passport", "purpose": "Travel"}, headers=headers)
    assert response.status_code == 400


def test_approval_assigns_number_validity_and_one_notification(app, client, resident, staff):
    resident_id, resident_headers = resident
    _, staff_headers = staff
    created = _create(client, resident_headers)

    response = _set_status(client, created["id"], staff_headers, "approved", remarks="Complete requirements")
    body = response.get_json()

    assert response.status_code == 200
    assert body["changed"] is True
    assert re.match(rf"^{datetime.utcnow().year}-\d{{5}}$", body["request"]["documentNumber"])
    assert body["request"]["validUntil"]
    with app.app_context():
        notifications = Notification.query.filter_by(user_id=resident_id).all()
        assert len(notifications) == 1
        assert notifications[0].category == "documents"
        assert notifications[0].payload["request_id"] == created["id"]


def test_reapplying_status_is_a_noop(app, client, resident, staff):
    resident_id, resident_headers = resident
    _, staff_headers = staff
    created = _create(client, resident_headers)
    first = _set_status(client, created["id"], staff_headers, "approved").get_json()

    again = _set_status(client, created["id"], staff_headers, "approved")

    assert again.status_code == 200
    assert again.get_json()["changed"] is False
    assert again.get_json()["request"]["documentNumber"] == first["request"]["documentNumber"]
    with app.app_context():
        assert Notification.query.filter_by(user_id=resident_id).count() == 1


def test_terminal_states_cannot_be_reopened(client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    created = _create(client, resident_headers)
    _set_status(client, created["id"], staff_headers, "rejected", remarks="Incomplete")

    response = _set_status(client, created["id"], staff_headers, "pending")

    assert response.status_code == 409
    assert response.get_json()["currentStatus"] == "rejected"


def test_document_numbers_increase_within_a_year(client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    numbers = []
    for _ in range(2):
        created = _create(client, resident_headers)
        numbers.append(_set_status(client, created["id"], staff_headers, "approved").get_json()["request"]["documentNumber"])
    first, second = (int(n.split("-")[1]) for n in numbers)
    assert second == first + 1


def test_document_number_survives_completion(app, client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    created = _create(client, resident_headers)
    approved = _set_status(client, created["id"], staff_headers, "approved").get_json()["request"]

    completed = _set_status(client, created["id"], staff_headers, "completed").get_json()["request"]

    assert completed["status"] == "completed"
    assert completed["documentNumber"] == approved["documentNumber"]
    assert completed["validUntil"] == approved["validUntil"]


def test_transition_lost_race_reports_current_state(app, resident, staff, client):
    _, resident_headers = resident
    staff_id, _ = staff
    created = _create(client, resident_headers)
    with app.test_request_context():
        actor = db.session.get(User, staff_id)
        # Another worker already moved the row.
        DocumentRequest.query.filter_by(id=created["id"]).update({"status": "processing"})
        db.session.commit()
        doc_request, changed = transition(created["id"], "processing", actor)
        assert changed is False
        assert doc_request.status == "processing"


def test_staff_cannot_be_bypassed_by_residents(client, resident):
    _, headers = resident
    created = _create(client, headers)
    assert _set_status(client, created["id"], headers, "approved").status_code == 403


def test_payment_update(client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    created = _create(client, resident_headers)
    response = client.patch(
        f"/api/document-requests/{created['id']}/payment", json={"paymentStatus": "paid"}, headers=staff_headers
    )
    assert response.status_code == 200
    assert response.get_json()["request"]["paymentStatus"] == "paid"
    assert response.get_json()["request"]["paymentDate"]


def test_owner_can_cancel_pending_request_only(client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    pending = _create(client, resident_headers)
    approved = _create(client, resident_headers)
    _set_status(client, approved["id"], staff_headers, "approved")

    assert client.delete(f"/api/document-requests/{pending['id']}", headers=resident_headers).status_code == 200
    assert client.delete(f"/api/document-requests/{approved['id']}", headers=resident_headers).status_code == 409


def test_staff_listing_filters_by_status(client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    first = _create(client, resident_headers)
    _create(client, resident_headers)
    _set_status(client, first["id"], staff_headers, "processing")

    listing = client.get("/api/document-requests?status=processing", headers=staff_headers).get_json()

    assert listing["total"] == 1
    assert listing["requests"][0]["id"] == first["id"]


def test_transition_table():
    assert can_transition("pending", "approved")
    assert can_transition("approved", "completed")
    assert not can_transition("approved", "pending")
    assert not can_transition("completed", "rejected")


def test_next_document_number_starts_at_one(app):
    with app.app_context():
        assert next_document_number(1999) == "1999-00001"
