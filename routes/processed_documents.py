"""Generated document catalogue and downloads."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from extensions import db
from models import DocumentRequest, ProcessedDocument
from routes.forms import int_arg, send_bytes
from utils.blob_store import get_blob_store
from utils.decorators import log_action, roles_required
from utils.errors import Forbidden, NotFoundError

processed_documents_bp = Blueprint("processed_documents", __name__, url_prefix="/api/processed-documents")


def _document_or_404(document_id: str) -> ProcessedDocument:
    record = db.session.get(ProcessedDocument, document_id)
    if not record:
        raise NotFoundError("Processed document not found")
    return record


def _ensure_can_read(record: ProcessedDocument) -> None:
    if current_user.is_staff:
        return
    doc_request = record.request
    if doc_request and doc_request.requester_id == current_user.id and doc_request.status in ("approved", "completed"):
        return
    raise Forbidden()


@processed_documents_bp.route("", methods=["GET"])
@roles_required("staff", "admin")
def list_processed_documents():
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", 20)
    query = ProcessedDocument.query
    if request.args.get("requestId"):
        query = query.filter(ProcessedDocument.request_id == request.args["requestId"])
    if request.args.get("templateId"):
        query = query.filter(ProcessedDocument.template_id == request.args["templateId"])
    if request.args.get("transactionCode"):
        query = query.filter(ProcessedDocument.transaction_code == request.args["transactionCode"].strip().upper())
    total = query.count()
    items = query.order_by(ProcessedDocument.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"documents": [d.to_dict() for d in items], "total": total, "page": page, "limit": limit})


@processed_documents_bp.route("/<string:document_id>", methods=["GET"])
@roles_required("resident", "staff", "admin")
def get_processed_document(document_id):
    record = _document_or_404(document_id)
    _ensure_can_read(record)
    return jsonify({"document": record.to_dict()})


@processed_documents_bp.route("/<string:document_id>/download", methods=["GET"])
@roles_required("resident", "staff", "admin")
def download_processed_document(document_id):
    record = _document_or_404(document_id)
    _ensure_can_read(record)
    data = get_blob_store().get("processed_documents", record.blob_key)
    return send_bytes(data, record.content_type, record.filename)


@processed_documents_bp.route("/<string:document_id>", methods=["DELETE"])
@roles_required("admin")
def delete_processed_document(document_id):
    record = _document_or_404(document_id)
    blob_key = record.blob_key
    DocumentRequest.query.filter(DocumentRequest.processed_document_id == record.id).update(
        {"processed_document_id": None}, synchronize_session=False
    )
    db.session.delete(record)
    log_action("PROCESSED_DOCUMENT_DELETED", current_user, context=f"processed_document:{document_id}")
    db.session.commit()
    get_blob_store().delete("processed_documents", blob_key)
    current_app.logger.info("processed_document_deleted", extra={"processed_document_id": document_id})
    return jsonify({"message": "Processed document deleted"})
