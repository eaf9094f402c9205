"""Document request intake, staff processing, and generated document delivery."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy import or_
from wtforms import DecimalField, SelectField, StringField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from extensions import db
from models import DOCUMENT_TYPES, PAYMENT_STATUSES, REQUEST_STATUSES, DocumentRequest, ProcessedDocument, Template
from routes.forms import ApiForm, int_arg, json_body, load_form, send_bytes, string_map
from utils.blob_store import get_blob_store
from utils.decorators import log_action, roles_required
from utils.document_pipeline import generate
from utils.errors import ConflictError, Forbidden, NotFoundError, ValidationError
from utils.request_workflow import create_request, transition, update_payment
from utils.security import sanitize_input

document_requests_bp = Blueprint("document_requests", __name__, url_prefix="/api/document-requests")


class DocumentRequestForm(ApiForm):
    document_type = SelectField("Document Type", choices=[(t, t) for t in DOCUMENT_TYPES], validators=[DataRequired()])
    purpose = StringField("Purpose", validators=[DataRequired(), Length(max=500)])


class StatusForm(ApiForm):
    status = SelectField("Status", choices=[(s, s) for s in REQUEST_STATUSES], validators=[DataRequired()])
    remarks = StringField("Remarks", validators=[Optional(), Length(max=1000)])


class PaymentForm(ApiForm):
    payment_status = SelectField("Payment Status", choices=[(s, s) for s in PAYMENT_STATUSES], validators=[DataRequired()])
    amount = DecimalField("Amount", validators=[Optional(), NumberRange(min=0)])


def _request_or_404(request_id: str) -> DocumentRequest:
    doc_request = db.session.get(DocumentRequest, request_id)
    if not doc_request:
        raise NotFoundError("Document request not found")
    return doc_request


def _ensure_can_view(doc_request: DocumentRequest) -> None:
    if current_user.is_staff or doc_request.requester_id == current_user.id:
        return
    raise Forbidden()


def _resolve_template(doc_request: DocumentRequest, template_id: str | None) -> Template:
    if template_id:
        template = db.session.get(Template, template_id)
    elif doc_request.template_id:
        template = db.session.get(Template, doc_request.template_id)
    else:
        template = (
            Template.query.filter_by(document_type=doc_request.document_type)
            .order_by(Template.created_at.desc())
            .first()
        )
    if not template:
        raise NotFoundError("No template available for this request")
    return template


@document_requests_bp.route("", methods=["POST"])
@roles_required("resident", "staff", "admin")
def create_document_request():
    form = load_form(DocumentRequestForm)
    field_values = string_map(json_body().get("fieldValues"))
    doc_request = create_request(current_user, form.document_type.data, form.purpose.data, field_values)
    return jsonify({"request": doc_request.to_dict()}), 201


@document_requests_bp.route("/mine", methods=["GET"])
@roles_required("resident", "staff", "admin")
def my_requests():
    query = DocumentRequest.query.filter(DocumentRequest.requester_id == current_user.id)
    status = request.args.get("status")
    if status:
        query = query.filter(DocumentRequest.status == status)
    items = query.order_by(DocumentRequest.created_at.desc()).all()
    return jsonify({"requests": [r.to_dict() for r in items]})


@document_requests_bp.route("", methods=["GET"])
@roles_required("staff", "admin")
def list_requests():
    filters = sanitize_input(request.args)
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", 20)
    query = DocumentRequest.query
    if filters.get("status"):
        if filters["status"] not in REQUEST_STATUSES:
            raise ValidationError("Unknown status filter")
        query = query.filter(DocumentRequest.status == filters["status"])
    if filters.get("type"):
        query = query.filter(DocumentRequest.document_type == filters["type"])
    if filters.get("paymentStatus"):
        query = query.filter(DocumentRequest.payment_status == filters["paymentStatus"])
    search = request.args.get("search")
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                DocumentRequest.requester_username.ilike(pattern),
                DocumentRequest.purpose.ilike(pattern),
                DocumentRequest.document_number.ilike(pattern),
                DocumentRequest.transaction_code.ilike(pattern),
            )
        )
    total = query.count()
    items = query.order_by(DocumentRequest.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"requests": [r.to_dict() for r in items], "total": total, "page": page, "limit": limit})


@document_requests_bp.route("/<string:request_id>", methods=["GET"])
@roles_required("resident", "staff", "admin")
def get_request(request_id):
    doc_request = _request_or_404(request_id)
    _ensure_can_view(doc_request)
    return jsonify({"request": doc_request.to_dict()})


@document_requests_bp.route("/<string:request_id>", methods=["DELETE"])
@roles_required("resident", "staff", "admin")
def cancel_request(request_id):
    doc_request = _request_or_404(request_id)
    if not current_user.is_admin:
        if doc_request.requester_id != current_user.id:
            raise Forbidden()
        if doc_request.status != "pending":
            raise ConflictError("Only pending requests can be cancelled")
    if doc_request.processed_document_id:
        raise ConflictError("A generated document exists for this request; remove it first")
    log_action("REQUEST_DELETED", current_user, context=f"document_request:{doc_request.id}")
    db.session.delete(doc_request)
    db.session.commit()
    return jsonify({"message": "Request deleted"})


@document_requests_bp.route("/<string:request_id>/status", methods=["PATCH"])
@roles_required("staff", "admin")
def change_status(request_id):
    form = load_form(StatusForm)
    doc_request, changed = transition(request_id, form.status.data, current_user, remarks=form.remarks.data)
    return jsonify({"request": doc_request.to_dict(), "changed": changed})


@document_requests_bp.route("/<string:request_id>/payment", methods=["PATCH"])
@roles_required("staff", "admin")
def change_payment(request_id):
    form = load_form(PaymentForm)
    amount = float(form.amount.data) if form.amount.data is not None else None
    doc_request = update_payment(request_id, form.payment_status.data, current_user, amount=amount)
    return jsonify({"request": doc_request.to_dict()})


@document_requests_bp.route("/<string:request_id>/generate", methods=["POST"])
@roles_required("staff", "admin")
def generate_document(request_id):
    doc_request = _request_or_404(request_id)
    body = json_body()
    template = _resolve_template(doc_request, body.get("templateId"))
    result = generate(template.id, string_map(body.get("fieldValues")), request_id=doc_request.id, actor=current_user)
    log_action("DOCUMENT_GENERATED", current_user, context=f"processed_document:{result.record.id}")
    db.session.commit()

    response = send_bytes(result.content, result.record.content_type, result.record.filename)
    response.headers["X-Processed-Doc-Id"] = result.record.id
    if result.transaction_code:
        response.headers["X-Transaction-Code"] = result.transaction_code
    response.headers["Access-Control-Expose-Headers"] = "X-Processed-Doc-Id, X-Transaction-Code, Content-Disposition"
    return response


@document_requests_bp.route("/<string:request_id>/document", methods=["GET"])
@roles_required("resident", "staff", "admin")
def download_document(request_id):
    doc_request = _request_or_404(request_id)
    _ensure_can_view(doc_request)
    if not current_user.is_staff and doc_request.status not in ("approved", "completed"):
        raise Forbidden("Document is not available until the request is approved")
    if not doc_request.processed_document_id:
        raise NotFoundError("No document has been generated for this request")
    record = db.session.get(ProcessedDocument, doc_request.processed_document_id)
    if not record:
        raise NotFoundError("Generated document not found")
    data = get_blob_store().get("processed_documents", record.blob_key)
    current_app.logger.info("processed_document_downloaded", extra={"processed_document_id": record.id, "user_id": current_user.id})
    return send_bytes(data, record.content_type, record.filename)
