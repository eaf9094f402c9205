import io
import os
import time

import pytest
from PIL import Image

from extensions import db
from models import Announcement, Notification, ProcessedDocument, Template, User, VerificationRequest
from tests.conftest import build_docx
from utils.blob_store import BlobStore, get_blob_store, sweep_orphans


def test_upload_extracts_placeholders(client, staff, upload_template, clearance_docx):
    _, headers = staff
    response = upload_template(headers, clearance_docx)
    template = response.get_json()["template"]

    assert response.status_code == 201
    assert template["placeholders"] == [
        "fullName",
        "address",
        "purpose",
        "documentNumber",
        "validUntil",
        "transactionCode",
        "qr",
    ]
    assert template["size"] == len(clearance_docx)
    recomputed = client.get(f"/api/templates/{template['id']}/placeholders", headers=headers).get_json()
    assert recomputed["placeholders"] == template["placeholders"]


def test_upload_rejects_non_docx(app, client, staff, upload_template):
    _, headers = staff
    assert upload_template(headers, b"plain text", filename="notes.txt").status_code == 400
    broken = upload_template(headers, b"not really a docx", filename="broken.docx")
    assert broken.status_code == 400
    with app.app_context():
        assert Template.query.count() == 0
        assert list(get_blob_store().iter_keys("templates")) == []


def test_residents_cannot_upload_templates(client, resident, upload_template, clearance_docx):
    _, headers = resident
    assert upload_template(headers, clearance_docx).status_code == 403


def test_download_returns_original_bytes(client, staff, upload_template, clearance_docx):
    _, headers = staff
    template = upload_template(headers, clearance_docx).get_json()["template"]
    response = client.get(f"/api/templates/{template['id']}/download", headers=headers)
    assert response.data == clearance_docx
    assert "attachment" in response.headers["Content-Disposition"]


def test_preview_formats(client, staff, upload_template):
    _, headers = staff
    template = upload_template(headers, build_docx("Hello {name}", "[qr]")).get_json()["template"]
    base = f"/api/templates/{template['id']}/preview"

    html = client.get(base, headers=headers)
    assert html.mimetype == "text/html"
    assert "Hello {name}" in html.get_data(as_text=True)

    text = client.post(f"{base}?format=text", json={"fieldValues": {"name": "Liza"}}, headers=headers)
    assert text.get_data(as_text=True).splitlines()[0] == "Hello Liza"

    pdf = client.get(f"{base}?format=pdf", headers=headers)
    assert pdf.mimetype == "application/pdf"
    assert pdf.data.startswith(b"%PDF")

    assert client.get(f"{base}?format=xml", headers=headers).status_code == 400
    missing = client.post(f"{base}?format=text", json={"fieldValues": {}}, headers=headers)
    assert missing.status_code == 400
    assert missing.get_json()["missing"] == ["name"]


def test_admin_deletes_template_and_blob(app, client, staff, admin, upload_template, clearance_docx):
    _, staff_headers = staff
    _, admin_headers = admin
    template = upload_template(staff_headers, clearance_docx).get_json()["template"]
    assert client.delete(f"/api/templates/{template['id']}", headers=staff_headers).status_code == 403

    assert client.delete(f"/api/templates/{template['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/templates/{template['id']}", headers=admin_headers).status_code == 404
    with app.app_context():
        assert list(get_blob_store().iter_keys("templates")) == []


def test_template_with_issued_documents_cannot_be_deleted(app, client, staff, admin, approved_request):
    _, staff_headers = staff
    _, admin_headers = admin
    generated = client.post(f"/api/document-requests/{approved_request['request_id']}/generate", json={}, headers=staff_headers)
    doc_id = generated.headers["X-Processed-Doc-Id"]

    refused = client.delete(f"/api/templates/{approved_request['template_id']}", headers=admin_headers)

    assert refused.status_code == 409
    assert refused.get_json()["processedDocuments"] == 1
    with app.app_context():
        assert db.session.get(ProcessedDocument, doc_id).template_id == approved_request["template_id"]
        assert db.session.get(Template, approved_request["template_id"]) is not None

    assert client.delete(f"/api/processed-documents/{doc_id}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/templates/{approved_request['template_id']}", headers=admin_headers).status_code == 200


def test_guest_may_browse_templates(client, make_guest, staff, upload_template, clearance_docx):
    _, staff_headers = staff
    upload_template(staff_headers, clearance_docx)
    _, guest_headers = make_guest()
    listing = client.get("/api/templates", headers=guest_headers).get_json()
    assert listing["total"] == 1


def test_processed_document_access(client, resident, staff, admin, make_user, approved_request):
    _, resident_headers = resident
    _, staff_headers = staff
    _, admin_headers = admin
    _, other_headers = make_user("marites")
    generated = client.post(f"/api/document-requests/{approved_request['request_id']}/generate", json={}, headers=staff_headers)
    doc_id = generated.headers["X-Processed-Doc-Id"]

    assert client.get(f"/api/processed-documents/{doc_id}/download", headers=resident_headers).data == generated.data
    assert client.get(f"/api/processed-documents/{doc_id}/download", headers=other_headers).status_code == 403
    assert client.get("/api/processed-documents", headers=staff_headers).get_json()["total"] == 1

    assert client.delete(f"/api/processed-documents/{doc_id}", headers=admin_headers).status_code == 200
    request_body = client.get(f"/api/document-requests/{approved_request['request_id']}", headers=staff_headers).get_json()
    assert request_body["request"]["processedDocumentId"] is None


def test_public_verification(client, staff, approved_request):
    _, staff_headers = staff
    generated = client.post(f"/api/document-requests/{approved_request['request_id']}/generate", json={}, headers=staff_headers)
    code = generated.headers["X-Transaction-Code"]

    result = client.get(f"/api/verify/{code.lower()}")
    assert result.status_code == 200
    assert result.get_json()["valid"] is True
    assert result.get_json()["issuedTo"] == "Juan Dela Cruz"

    pdf = client.get(f"/api/verify/{code}?format=pdf")
    assert pdf.data.startswith(b"%PDF")
    assert client.get("/api/verify/2020-NOPE00-000000").status_code == 404


def test_officials_crud_and_public_listing(client, admin):
    _, headers = admin
    created = client.post(
        "/api/admin/officials",
        json={"name": "Hon. Reyes", "position": "Kagawad", "termStart": "2023-11-30", "termEnd": "2026-06-30"},
        headers=headers,
    )
    official = created.get_json()["official"]
    assert created.status_code == 201
    assert official["isActive"] is True
    assert official["termStart"] == "2023-11-30"

    updated = client.put(
        f"/api/admin/officials/{official['id']}",
        json={"name": "Hon. Reyes", "position": "Kagawad", "isActive": False},
        headers=headers,
    )
    assert updated.get_json()["official"]["isActive"] is False
    assert client.get("/api/officials").get_json()["officials"] == []

    bad = client.post(
        "/api/admin/officials",
        json={"name": "X", "position": "Y", "termStart": "2026-01-01", "termEnd": "2025-01-01"},
        headers=headers,
    )
    assert bad.status_code == 400
    assert client.delete(f"/api/admin/officials/{official['id']}", headers=headers).status_code == 200


def test_settings_round_trip(client, admin):
    _, headers = admin
    client.put("/api/admin/settings", json={"settings": {"office_hours": "8AM-5PM", "fees_enabled": True}}, headers=headers)
    settings = client.get("/api/admin/settings", headers=headers).get_json()["settings"]
    assert settings == {"fees_enabled": True, "office_hours": "8AM-5PM"}


def test_statistics_are_cached(client, resident, staff):
    _, resident_headers = resident
    _, staff_headers = staff
    first = client.get("/api/admin/statistics", headers=staff_headers).get_json()["statistics"]
    client.post("/api/document-requests", json={"documentType": "id_application", "purpose": "ID"}, headers=resident_headers)

    cached = client.get("/api/admin/statistics", headers=staff_headers).get_json()["statistics"]
    fresh = client.get("/api/admin/statistics?refresh=true", headers=staff_headers).get_json()["statistics"]

    assert cached == first
    assert fresh["requestsByStatus"] == {"pending": 1}
    assert fresh["usersByRole"]["resident"] == 1


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (20, 20), "white").save(buffer, format="PNG")
    return buffer.getvalue()


def test_id_verification_flow(app, client, resident, staff):
    resident_id, resident_headers = resident
    _, staff_headers = staff
    form = {"file": (io.BytesIO(_png_bytes()), "national-id.png"), "idType": "PhilSys"}
    upload = client.post("/api/verification", data=form, headers=resident_headers, content_type="multipart/form-data")
    assert upload.status_code == 201
    verification_id = upload.get_json()["verificationRequest"]["id"]

    again = client.post(
        "/api/verification",
        data={"file": (io.BytesIO(_png_bytes()), "id.png"), "idType": "PhilSys"},
        headers=resident_headers,
        content_type="multipart/form-data",
    )
    assert again.status_code == 409

    reviewed = client.patch(
        f"/api/admin/verification-requests/{verification_id}", json={"status": "approved"}, headers=staff_headers
    )
    assert reviewed.get_json()["verificationRequest"]["status"] == "approved"
    with app.app_context():
        assert db.session.get(User, resident_id).is_verified is True


def test_id_upload_rejects_fake_images(client, resident):
    _, headers = resident
    form = {"file": (io.BytesIO(b"not an image"), "id.png"), "idType": "Passport"}
    response = client.post("/api/verification", data=form, headers=headers, content_type="multipart/form-data")
    assert response.status_code == 400


def test_blob_store_rejects_keys_outside_bucket(tmp_path):
    store = BlobStore(str(tmp_path))
    stored = store.put("templates", b"abc", extension="docx")
    assert stored["key"].endswith(".docx")
    assert store.get("templates", stored["key"]) == b"abc"
    with pytest.raises(ValueError):
        store.get("templates", "../processed_documents/x")


def test_sweep_removes_only_unreferenced_blobs(app, staff, client, upload_template, clearance_docx):
    _, headers = staff
    upload_template(headers, clearance_docx)
    with app.app_context():
        store = get_blob_store()
        orphan = store.put("processed_documents", b"orphan", extension=".docx")["key"]
        old = time.time() - 3600
        os.utime(os.path.join(store.root, "processed_documents", orphan), (old, old))

        removed = sweep_orphans(min_age_seconds=60)

        assert removed["processed_documents"] == [orphan]
        assert removed["templates"] == []
        assert not store.exists("processed_documents", orphan)
        assert len(list(store.iter_keys("templates"))) == 1


def test_healthz(client):
    assert client.get("/healthz").get_json() == {"status": "ok", "database": "ok"}


def test_request_id_is_echoed(client):
    assert client.get("/healthz", headers={"X-Request-ID": "abc-123"}).headers["X-Request-ID"] == "abc-123"
    assert len(client.get("/healthz", headers={"X-Request-ID": "bad id!"}).headers["X-Request-ID"]) == 32


def test_verification_is_reviewed_once(app, client, resident, staff, admin):
    resident_id, resident_headers = resident
    _, staff_headers = staff
    _, admin_headers = admin
    form = {"file": (io.BytesIO(_png_bytes()), "national-id.png"), "idType": "PhilSys"}
    verification_id = client.post(
        "/api/verification", data=form, headers=resident_headers, content_type="multipart/form-data"
    ).get_json()["verificationRequest"]["id"]
    url = f"/api/admin/verification-requests/{verification_id}"

    assert client.patch(url, json={"status": "rejected", "notes": "Blurry"}, headers=staff_headers).status_code == 200
    second = client.patch(url, json={"status": "approved"}, headers=admin_headers)

    assert second.status_code == 409
    assert second.get_json()["currentStatus"] == "rejected"
    with app.app_context():
        record = db.session.get(VerificationRequest, verification_id)
        assert record.status == "rejected"
        assert record.notes == "Blurry"
        assert db.session.get(User, resident_id).is_verified is False
        reviewed = Notification.query.filter_by(user_id=resident_id, title="ID verification reviewed").count()
        assert reviewed == 1


def test_announcements_crud_and_public_feed(app, client, admin, staff):
    _, admin_headers = admin
    _, staff_headers = staff
    assert client.post("/api/admin/announcements", json={"text": "Nope"}, headers=staff_headers).status_code == 403
    assert client.post("/api/admin/announcements", json={"text": ""}, headers=admin_headers).status_code == 400

    first = client.post("/api/admin/announcements", json={"text": "Clean-up drive on Saturday"}, headers=admin_headers)
    form = {"text": "Vaccination schedule", "image": (io.BytesIO(_png_bytes()), "poster.png")}
    second = client.post(
        "/api/admin/announcements", data=form, headers=admin_headers, content_type="multipart/form-data"
    )
    assert first.status_code == second.status_code == 201
    with_image = second.get_json()["announcement"]
    assert with_image["hasImage"] is True
    assert first.get_json()["announcement"]["imageUrl"] is None

    feed = client.get("/api/announcements").get_json()
    assert feed["total"] == 2
    assert [a["text"] for a in feed["announcements"]] == ["Vaccination schedule", "Clean-up drive on Saturday"]
    image = client.get(with_image["imageUrl"])
    assert image.mimetype == "image/png"
    assert Image.open(io.BytesIO(image.data)).size == (20, 20)
    assert client.get(f"/api/announcements/{first.get_json()['announcement']['id']}/image").status_code == 404

    updated = client.put(
        f"/api/admin/announcements/{with_image['id']}",
        json={"text": "Vaccination moved to Sunday", "removeImage": True},
        headers=admin_headers,
    ).get_json()["announcement"]
    assert updated["text"] == "Vaccination moved to Sunday"
    assert updated["hasImage"] is False
    with app.app_context():
        assert list(get_blob_store().iter_keys("announcements")) == []

    assert client.delete(f"/api/admin/announcements/{with_image['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/announcements/{with_image['id']}").status_code == 404
    with app.app_context():
        assert Announcement.query.count() == 1


def test_announcement_image_must_be_a_picture(client, admin):
    _, headers = admin
    form = {"text": "Notice", "image": (io.BytesIO(b"%PDF-1.4 not a picture"), "notice.pdf")}
    response = client.post("/api/admin/announcements", data=form, headers=headers, content_type="multipart/form-data")
    assert response.status_code == 400
