import io
import re

from docx import Document

from extensions import db
from models import DocumentRequest, ProcessedDocument
from tests.conftest import build_docx
from utils.blob_store import get_blob_store
from utils.document_pipeline import resolve_field_values
from utils.errors import MissingFieldValue

CODE_PATTERN = re.compile(r"^\d{4}-[A-Z0-9]{6}-[A-Z0-9]{6}$")


def _generate(client, request_id, headers, **body):
    return client.post(f"/api/document-requests/{request_id}/generate", json=body, headers=headers)


def test_generate_fills_template_and_embeds_qr(app, client, staff, approved_request):
    _, staff_headers = staff
    response = _generate(client, approved_request["request_id"], staff_headers)

    assert response.status_code == 200
    code = response.headers["X-Transaction-Code"]
    assert CODE_PATTERN.match(code)
    assert int(response.headers["Content-Length"]) == len(response.data)

    document = Document(io.BytesIO(response.data))
    text = "\n".join(p.text for p in document.paragraphs)
    assert "Juan Dela Cruz" in text
    assert "12 Mabini St" in text
    assert "Employment" in text
    assert f"Verification code: {code}" in text
    assert "{" not in text and "$[" not in text
    assert len(document.inline_shapes) == 1

    with app.app_context():
        record = db.session.get(ProcessedDocument, response.headers["X-Processed-Doc-Id"])
        assert record.size == len(response.data)
        assert get_blob_store().size("processed_documents", record.blob_key) == record.size
        doc_request = db.session.get(DocumentRequest, approved_request["request_id"])
        assert doc_request.transaction_code == code
        assert doc_request.processed_document_id == record.id
        assert doc_request.document_number in text


def test_regenerating_reuses_the_transaction_code(client, staff, approved_request):
    _, staff_headers = staff
    first = _generate(client, approved_request["request_id"], staff_headers)
    second = _generate(client, approved_request["request_id"], staff_headers, fieldValues={"purpose": "Scholarship"})

    assert second.status_code == 200
    assert first.headers["X-Transaction-Code"] == second.headers["X-Transaction-Code"]
    assert first.headers["X-Processed-Doc-Id"] != second.headers["X-Processed-Doc-Id"]
    text = "\n".join(p.text for p in Document(io.BytesIO(second.data)).paragraphs)
    assert "Scholarship" in text


def test_missing_values_fail_before_a_code_is_minted(app, client, staff, resident, upload_template):
    _, staff_headers = staff
    _, resident_headers = resident
    template = upload_template(staff_headers, build_docx("Owner: {businessName}", "[qr]")).get_json()["template"]
    created = client.post(
        "/api/document-requests",
        json={"documentType": "business_permit", "purpose": "Sari-sari store"},
        headers=resident_headers,
    ).get_json()["request"]

    response = _generate(client, created["id"], staff_headers, templateId=template["id"])

    assert response.status_code == 400
    assert response.get_json()["missing"] == ["businessName"]
    with app.app_context():
        assert db.session.get(DocumentRequest, created["id"]).transaction_code is None
        assert ProcessedDocument.query.count() == 0


def test_field_values_from_request_are_used(client, staff, resident, upload_template):
    _, staff_headers = staff
    _, resident_headers = resident
    template = upload_template(
        staff_headers, build_docx("Owner: {businessName}"), document_type="business_permit"
    ).get_json()["template"]
    created = client.post(
        "/api/document-requests",
        json={
            "documentType": "business_permit",
            "purpose": "Store",
            "fieldValues": {"business_name": "Aling Nena Store"},
        },
        headers=resident_headers,
    ).get_json()["request"]

    response = _generate(client, created["id"], staff_headers)

    assert response.status_code == 200
    assert template["id"] == client.get(
        f"/api/document-requests/{created['id']}", headers=staff_headers
    ).get_json()["request"]["templateId"]
    assert "Owner: Aling Nena Store" in "\n".join(p.text for p in Document(io.BytesIO(response.data)).paragraphs)


def test_standalone_generation_has_no_transaction_code(client, staff, upload_template):
    _, staff_headers = staff
    template = upload_template(staff_headers, build_docx("Dear {name},", "[qr]")).get_json()["template"]

    response = client.post(
        f"/api/templates/{template['id']}/generate", json={"fieldValues": {"name": "Ana"}}, headers=staff_headers
    )

    assert response.status_code == 200
    assert "X-Transaction-Code" not in response.headers
    document = Document(io.BytesIO(response.data))
    assert document.paragraphs[0].text == "Dear Ana,"
    assert len(document.inline_shapes) == 0


def test_resident_downloads_only_after_approval(client, resident, staff, approved_request):
    _, resident_headers = resident
    _, staff_headers = staff
    request_id = approved_request["request_id"]

    assert client.get(f"/api/document-requests/{request_id}/document", headers=resident_headers).status_code == 404
    generated = _generate(client, request_id, staff_headers)
    download = client.get(f"/api/document-requests/{request_id}/document", headers=resident_headers)

    assert download.status_code == 200
    assert download.data == generated.data


def test_resolve_field_values_lookup_order():
    resolved = resolve_field_values(
        ["fullName", "documentNumber", "qr"],
        {"full_name": "Juan"},
        {"documentNumber": None},
    )
    assert resolved == {"fullName": "Juan", "documentNumber": "", "qr": ""}


def test_resolve_field_values_lists_every_gap():
    try:
        resolve_field_values(["a", "b", "c"], {"b": "x"})
    except MissingFieldValue as exc:
        assert exc.missing == ["a", "c"]
    else:
        raise AssertionError("MissingFieldValue not raised")


def test_requester_cannot_supply_workflow_fields(app, client, resident, staff, upload_template, clearance_docx):
    _, resident_headers = resident
    _, staff_headers = staff
    upload_template(staff_headers, clearance_docx)
    created = client.post(
        "/api/document-requests",
        json={
            "documentType": "barangay_clearance",
            "purpose": "Employment",
            "fieldValues": {"documentNumber": "2099-99999", "validUntil": "forever", "transaction_code": "FAKE"},
        },
        headers=resident_headers,
    ).get_json()["request"]
    assert created["fieldValues"] == {}

    response = _generate(client, created["id"], staff_headers, fieldValues={"documentNumber": "STAFF-1"})
    assert response.status_code == 200

    text = "\n".join(p.text for p in Document(io.BytesIO(response.data)).paragraphs)
    assert "2099-99999" not in text
    assert "forever" not in text
    assert "STAFF-1" not in text
    assert f"Verification code: {response.headers['X-Transaction-Code']}" in text
    with app.app_context():
        assert db.session.get(DocumentRequest, created["id"]).field_values == {}


def test_resolve_field_values_ignores_supplied_workflow_fields():
    resolved = resolve_field_values(["documentNumber", "valid_until"], {"documentNumber": "X", "valid_until": "Y"})
    assert resolved == {"documentNumber": "", "valid_until": ""}


def test_control_characters_are_rejected_at_intake(app, client, resident):
    _, headers = resident
    bad_purpose = client.post(
        "/api/document-requests",
        json={"documentType": "barangay_clearance", "purpose": "Employ\x0bment"},
        headers=headers,
    )
    assert bad_purpose.status_code == 400
    assert "purpose" in bad_purpose.get_json()["errors"]

    bad_values = client.post(
        "/api/document-requests",
        json={"documentType": "barangay_clearance", "purpose": "Employment", "fieldValues": {"note": "a\x00b"}},
        headers=headers,
    )
    assert bad_values.status_code == 400
    with app.app_context():
        assert DocumentRequest.query.count() == 0


def test_stored_control_characters_are_stripped_before_substitution(app, client, staff, approved_request):
    _, staff_headers = staff
    with app.app_context():
        record = db.session.get(DocumentRequest, approved_request["request_id"])
        record.purpose = "Employ\x0bment"
        db.session.commit()

    response = _generate(client, approved_request["request_id"], staff_headers)

    assert response.status_code == 200
    text = "\n".join(p.text for p in Document(io.BytesIO(response.data)).paragraphs)
    assert "purpose of Employment." in text
