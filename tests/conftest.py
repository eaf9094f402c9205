import io
from datetime import datetime, timedelta

import pytest
from docx import Document

from app import create_app
from extensions import db
from models import Guest, Role, User
from routes.admin import STATS_CACHE
from utils.security import create_access_token, generate_token

PASSWORD = "Barangay2024Pass"


@pytest.fixture
def app():
    app = create_app("testing")
    STATS_CACHE.clear()
    yield app
    app.extensions["connection_registry"].close()
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


def _create_user(app, username, role, **overrides):
    with app.app_context():
        user = User(
            username=username,
            full_name=overrides.pop("full_name", username.title()),
            email=overrides.pop("email", f"{username}@mail.com"),
            role=Role.get_or_create(role),
            is_active=overrides.pop("is_active", True),
            **overrides,
        )
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user.id


def _headers(app, subject, role, kind="user", expires_delta=None):
    with app.app_context():
        token = create_access_token(subject, role, kind=kind, expires_delta=expires_delta)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(app):
    def factory(username, role="resident", **overrides):
        user_id = _create_user(app, username, role, **overrides)
        return user_id, _headers(app, user_id, role)

    return factory


@pytest.fixture
def resident(make_user):
    return make_user(
        "juan",
        "resident",
        full_name="Juan Dela Cruz",
        barangay_id="BRGY-0001",
        address="12 Mabini St",
        contact_number="09171234567",
    )


@pytest.fixture
def staff(make_user):
    return make_user("clerk", "staff", full_name="Maria Clerk")


@pytest.fixture
def admin(make_user):
    return make_user("captain", "admin", full_name="Kapitan Santos")


@pytest.fixture
def make_guest(app):
    def factory(expires_in=timedelta(hours=1)):
        with app.app_context():
            guest = Guest(
                name="Pedro Bisita",
                contact_number="09181234567",
                session_token=generate_token(16),
                expires_at=datetime.utcnow() + expires_in,
            )
            db.session.add(guest)
            db.session.commit()
            guest_id = guest.id
        return guest_id, _headers(app, guest_id, "guest", kind="guest", expires_delta=timedelta(hours=1))

    return factory


def build_docx(*paragraphs, table=None) -> bytes:
    """Each paragraph is a string (one run) or a list of run texts."""
    document = Document()
    for paragraph in paragraphs:
        if isinstance(paragraph, (list, tuple)):
            target = document.add_paragraph()
            for piece in paragraph:
                target.add_run(piece)
        else:
            document.add_paragraph(paragraph)
    if table:
        grid = document.add_table(rows=len(table), cols=len(table[0]))
        for r, row in enumerate(table):
            for c, text in enumerate(row):
                grid.cell(r, c).text = text
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


CLEARANCE_PARAGRAPHS = (
    "BARANGAY CLEARANCE",
    ["This certifies that {full", "Name} of ", "{address}"],
    "is cleared for the purpose of $[purpose].",
    "Document No: {documentNumber}",
    "Valid until: ${validUntil}",
    "Verification code: {transactionCode}",
    "[qr]",
)


@pytest.fixture
def clearance_docx():
    return build_docx(*CLEARANCE_PARAGRAPHS)


@pytest.fixture
def upload_template(client):
    def upload(headers, data, filename="clearance.docx", name="Barangay Clearance", document_type="barangay_clearance"):
        form = {"file": (io.BytesIO(data), filename), "name": name}
        if document_type:
            form["documentType"] = document_type
        return client.post("/api/templates", data=form, headers=headers, content_type="multipart/form-data")

    return upload


@pytest.fixture
def approved_request(client, resident, staff, upload_template, clearance_docx):
    """A resident's clearance request approved by staff, with a matching template on file."""
    _, resident_headers = resident
    _, staff_headers = staff
    template = upload_template(staff_headers, clearance_docx).get_json()["template"]
    created = client.post(
        "/api/document-requests",
        json={"documentType": "barangay_clearance", "purpose": "Employment"},
        headers=resident_headers,
    ).get_json()["request"]
    client.patch(f"/api/document-requests/{created['id']}/status", json={"status": "approved"}, headers=staff_headers)
    return {"request_id": created["id"], "template_id": template["id"]}
