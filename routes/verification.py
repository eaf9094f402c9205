"""Resident ID verification uploads and public document verification."""
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import DocumentRequest, VerificationRequest
from routes.forms import send_bytes
from utils.blob_store import get_blob_store
from utils.decorators import log_action, roles_required
from utils.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from utils.image_utils import get_mime_type, validate_id_document
from utils.notification_payloads import SystemPayload
from utils.notification_service import notify_role
from utils.pdf_generator import render_verification_pdf

verification_bp = Blueprint("verification", __name__, url_prefix="/api")

VALID_STATUSES: tuple[str, ...] = ("approved", "completed")


@verification_bp.route("/verification", methods=["POST"])
@roles_required("resident")
def upload_id():
    if current_user.is_verified:
        raise ConflictError("Account is already verified")
    pending = VerificationRequest.query.filter_by(user_id=current_user.id, status="pending").first()
    if pending:
        raise ConflictError("A verification request is already pending", verificationId=pending.id)

    id_type = (request.form.get("idType") or "").strip()
    if not id_type:
        raise ValidationError("idType is required", errors={"idType": ["This field is required."]})

    content, ext, filename = validate_id_document(
        request.files.get("file"), max_bytes=int(current_app.config.get("MAX_UPLOAD_BYTES", 8 * 1024 * 1024))
    )
    store = get_blob_store()
    stored = store.put("verification_documents", content, extension=f".{ext}")
    try:
        record = VerificationRequest(
            user_id=current_user.id,
            id_type=id_type[:80],
            filename=filename,
            content_type=get_mime_type(ext),
            size=stored["size"],
            blob_key=stored["key"],
        )
        db.session.add(record)
        db.session.flush()
        log_action("VERIFICATION_SUBMITTED", current_user, context=f"verification:{record.id}")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        store.delete("verification_documents", stored["key"])
        raise DependencyError("Unable to record verification request", dependency="database") from exc

    notify_role(
        "staff",
        "system",
        "ID verification submitted",
        f"{current_user.full_name} submitted a {record.id_type} for verification.",
        SystemPayload(link=f"/admin/verification/{record.id}"),
    )
    return jsonify({"verificationRequest": record.to_dict()}), 201


@verification_bp.route("/verification/mine", methods=["GET"])
@roles_required("resident")
def my_verification():
    items = (
        VerificationRequest.query.filter_by(user_id=current_user.id)
        .order_by(VerificationRequest.created_at.desc())
        .all()
    )
    return jsonify({"verified": current_user.is_verified, "verificationRequests": [v.to_dict() for v in items]})


def _verification_details(doc_request: DocumentRequest) -> dict:
    now = datetime.utcnow()
    expired = bool(doc_request.valid_until and doc_request.valid_until < now)
    valid = doc_request.status in VALID_STATUSES and not expired
    requester = doc_request.requester
    return {
        "valid": valid,
        "transactionCode": doc_request.transaction_code,
        "documentNumber": doc_request.document_number,
        "documentType": doc_request.document_type,
        "status": doc_request.status,
        "issuedTo": requester.full_name if requester else doc_request.requester_username,
        "dateApproved": doc_request.date_approved.isoformat() if doc_request.date_approved else None,
        "validUntil": doc_request.valid_until.isoformat() if doc_request.valid_until else None,
        "expired": expired,
        "checkedAt": now.isoformat(),
    }


@verification_bp.route("/verify/<string:code>", methods=["GET"])
def verify_document(code):
    code = (code or "").strip().upper()
    doc_request = DocumentRequest.query.filter_by(transaction_code=code).first() if code else None
    if not doc_request:
        current_app.logger.info("document_verification_miss", extra={"code": code[:40]})
        raise NotFoundError("No document matches this code", valid=False)

    details = _verification_details(doc_request)
    current_app.logger.info("document_verified", extra={"request_id": doc_request.id, "valid": details["valid"]})
    if (request.args.get("format") or "").lower() == "pdf":
        rows = {
            "Result": "VALID" if details["valid"] else "NOT VALID",
            "Transaction code": details["transactionCode"] or "",
            "Document number": details["documentNumber"] or "",
            "Document type": doc_request.document_type.replace("_", " ").title(),
            "Issued to": details["issuedTo"] or "",
            "Status": doc_request.status.title(),
            "Valid until": doc_request.valid_until.strftime("%B %d, %Y") if doc_request.valid_until else "",
        }
        return send_bytes(render_verification_pdf(rows), "application/pdf", f"verification_{code}.pdf", as_attachment=False)
    return jsonify(details)
