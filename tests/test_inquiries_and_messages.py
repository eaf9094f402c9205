from models import Message, Notification


def _open_inquiry(client, headers, subject="Water interruption"):
    response = client.post(
        "/api/inquiries",
        json={"subject": subject, "message": "When will service resume?", "inquiryType": "Complaint"},
        headers=headers,
    )
    assert response.status_code == 201
    return response.get_json()["inquiry"]


def test_guest_can_open_and_follow_an_inquiry(app, client, make_guest, staff):
    staff_id, staff_headers = staff
    guest_id, guest_headers = make_guest()

    inquiry = _open_inquiry(client, guest_headers)

    assert inquiry["guestId"] == guest_id
    assert inquiry["status"] == "open"
    with app.app_context():
        assert Notification.query.filter_by(user_id=staff_id, category="inquiries").count() == 1

    reply = client.post(f"/api/inquiries/{inquiry['id']}/responses", json={"text": "Tomorrow at 8 AM."}, headers=staff_headers)
    assert reply.status_code == 201
    assert reply.get_json()["inquiry"]["status"] == "in-progress"

    mine = client.get("/api/inquiries/mine", headers=guest_headers).get_json()["inquiries"]
    assert [r["text"] for r in mine[0]["responses"]] == ["Tomorrow at 8 AM."]


def test_staff_reply_messages_and_notifies_resident(app, client, resident, staff):
    resident_id, resident_headers = resident
    _, staff_headers = staff
    inquiry = _open_inquiry(client, resident_headers)

    client.post(f"/api/inquiries/{inquiry['id']}/responses", json={"text": "<b>Noted</b>"}, headers=staff_headers)

    with app.app_context():
        message = Message.query.filter_by(recipient_id=resident_id).one()
        assert message.text == "Noted"
        assert message.inquiry_id == inquiry["id"]
        assert Notification.query.filter_by(user_id=resident_id, category="inquiries").count() == 1
    inbox = client.get("/api/messages", headers=resident_headers).get_json()
    assert inbox["total"] == 1
    assert client.get("/api/messages/unread-count", headers=resident_headers).get_json() == {"unreadCount": 1}


def test_other_residents_cannot_read_an_inquiry(client, resident, make_user):
    _, resident_headers = resident
    _, other_headers = make_user("pedro")
    inquiry = _open_inquiry(client, resident_headers)
    assert client.get(f"/api/inquiries/{inquiry['id']}", headers=other_headers).status_code == 403
    assert client.get(f"/api/inquiries/{inquiry['id']}", headers=resident_headers).status_code == 200


def test_assignment_and_scheduling(app, client, resident, staff, admin):
    staff_id, _ = staff
    _, admin_headers = admin
    resident_id, resident_headers = resident
    inquiry = _open_inquiry(client, resident_headers)

    response = client.patch(
        f"/api/inquiries/{inquiry['id']}",
        json={"assignedTo": staff_id, "scheduledAt": "2030-01-15T09:00:00Z"},
        headers=admin_headers,
    )
    body = response.get_json()["inquiry"]

    assert response.status_code == 200
    assert body["assignedTo"] == staff_id
    assert body["status"] == "scheduled"
    assert body["scheduledAt"].startswith("2030-01-15T09:00")
    with app.app_context():
        titles = {n.title for n in Notification.query.filter_by(user_id=staff_id).all()}
        assert "Inquiry assigned to you" in titles
        assert Notification.query.filter_by(user_id=resident_id, title="Inquiry status updated").count() == 1


def test_assignment_requires_active_staff(client, resident, admin):
    resident_id, resident_headers = resident
    _, admin_headers = admin
    inquiry = _open_inquiry(client, resident_headers)
    response = client.patch(f"/api/inquiries/{inquiry['id']}", json={"assignedTo": resident_id}, headers=admin_headers)
    assert response.status_code == 400


def test_staff_inquiry_listing(client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    _open_inquiry(client, resident_headers, "Street light")
    _open_inquiry(client, resident_headers, "Garbage schedule")
    listing = client.get("/api/inquiries?status=open", headers=staff_headers).get_json()
    assert listing["total"] == 2
    assert client.get("/api/inquiries?status=closed", headers=staff_headers).status_code == 400


def test_direct_messages(client, resident, staff):
    resident_id, resident_headers = resident
    _, staff_headers = staff

    sent = client.post(
        "/api/messages",
        json={"recipientId": resident_id, "subject": "Pickup", "text": "Your clearance is ready."},
        headers=staff_headers,
    )
    assert sent.status_code == 201
    message_id = sent.get_json()["message"]["id"]

    assert client.post("/api/messages", json={"recipientId": resident_id, "text": "hi"}, headers=resident_headers).status_code == 403
    read = client.patch(f"/api/messages/{message_id}/read", headers=resident_headers)
    assert read.get_json()["message"]["read"] is True
    assert client.patch(f"/api/messages/{message_id}/read", headers=staff_headers).status_code == 404
    assert client.get("/api/messages/sent", headers=staff_headers).get_json()["total"] == 1
