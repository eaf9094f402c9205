"""DOCX template upload, inspection, preview, and standalone generation."""
import os

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from extensions import db
from models import DOCUMENT_TYPES, DocumentRequest, ProcessedDocument, Template
from routes.forms import bool_arg, int_arg, json_body, send_bytes, string_map
from utils.blob_store import get_blob_store
from utils.decorators import auth_required, log_action, roles_required
from utils.document_pipeline import PREVIEW_FORMATS, generate, preview
from utils.docx_template import DOCX_CONTENT_TYPE, extract_placeholders
from utils.errors import ConflictError, DependencyError, NotFoundError, ValidationError

templates_bp = Blueprint("templates", __name__, url_prefix="/api/templates")


def _template_or_404(template_id: str) -> Template:
    template = db.session.get(Template, template_id)
    if not template:
        raise NotFoundError("Template not found")
    return template


@templates_bp.route("", methods=["POST"])
@roles_required("staff", "admin")
def upload_template():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("No file uploaded", errors={"file": ["A .docx file is required."]})
    filename = secure_filename(upload.filename) or "template.docx"
    if os.path.splitext(filename)[1].lower() != ".docx":
        raise ValidationError("Only .docx templates are supported", errors={"file": ["Unsupported file type."]})

    data = upload.read()
    limit = int(current_app.config.get("MAX_TEMPLATE_BYTES", 10 * 1024 * 1024))
    if len(data) > limit:
        raise ValidationError("Template exceeds the maximum upload size", limit=limit)

    document_type = (request.form.get("documentType") or "").strip() or None
    if document_type and document_type not in DOCUMENT_TYPES:
        raise ValidationError("Unknown document type", errors={"documentType": [document_type]})

    # Unreadable files are rejected before anything is stored.
    placeholders = extract_placeholders(data)

    store = get_blob_store()
    stored = store.put("templates", data, extension=".docx")
    try:
        template = Template(
            name=(request.form.get("name") or "").strip()[:255] or os.path.splitext(filename)[0],
            description=(request.form.get("description") or "").strip()[:500] or None,
            document_type=document_type,
            filename=filename,
            content_type=DOCX_CONTENT_TYPE,
            size=stored["size"],
            sha256=stored["sha256"],
            blob_key=stored["key"],
            placeholders=placeholders,
            uploaded_by_id=current_user.id,
        )
        db.session.add(template)
        db.session.flush()
        log_action("TEMPLATE_UPLOADED", current_user, context=f"template:{template.id}")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        store.delete("templates", stored["key"])
        raise DependencyError("Unable to record template", dependency="database") from exc

    current_app.logger.info(
        "template_uploaded",
        extra={"template_id": template.id, "size": template.size, "placeholders": len(placeholders)},
    )
    return jsonify({"template": template.to_dict()}), 201


@templates_bp.route("", methods=["GET"])
@auth_required(allow_guest=True)
def list_templates():
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", 50)
    query = Template.query
    document_type = request.args.get("documentType")
    if document_type:
        query = query.filter(Template.document_type == document_type)
    search = request.args.get("search")
    if search:
        query = query.filter(Template.name.ilike(f"%{search.strip()}%"))
    total = query.count()
    items = query.order_by(Template.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"templates": [t.to_dict() for t in items], "total": total, "page": page, "limit": limit})


@templates_bp.route("/<string:template_id>", methods=["GET"])
@auth_required(allow_guest=True)
def get_template(template_id):
    return jsonify({"template": _template_or_404(template_id).to_dict()})


@templates_bp.route("/<string:template_id>/placeholders", methods=["GET"])
@auth_required(allow_guest=True)
def template_placeholders(template_id):
    template = _template_or_404(template_id)
    placeholders = extract_placeholders(get_blob_store().get("templates", template.blob_key))
    if placeholders != list(template.placeholders or []):
        template.placeholders = placeholders
        db.session.commit()
    return jsonify({"templateId": template.id, "placeholders": placeholders})


@templates_bp.route("/<string:template_id>/download", methods=["GET"])
@roles_required("staff", "admin")
def download_template(template_id):
    template = _template_or_404(template_id)
    data = get_blob_store().get("templates", template.blob_key)
    return send_bytes(data, template.content_type, template.filename)


@templates_bp.route("/<string:template_id>/preview", methods=["GET", "POST"])
@roles_required("staff", "admin")
def preview_template(template_id):
    fmt = (request.args.get("format") or "html").lower()
    if fmt not in PREVIEW_FORMATS:
        raise ValidationError(f"Unsupported preview format: {fmt}", supported=list(PREVIEW_FORMATS))
    field_values = None
    if request.method == "POST":
        field_values = string_map(json_body().get("fieldValues"))
    body, mimetype = preview(template_id, field_values, fmt=fmt)
    if fmt == "pdf":
        return send_bytes(body, mimetype, f"preview_{template_id}.pdf", as_attachment=bool_arg("download"))
    return current_app.response_class(body, mimetype=mimetype)


@templates_bp.route("/<string:template_id>/generate", methods=["POST"])
@roles_required("staff", "admin")
def generate_from_template(template_id):
    body = json_body()
    result = generate(template_id, string_map(body.get("fieldValues")), actor=current_user)
    log_action("DOCUMENT_GENERATED", current_user, context=f"processed_document:{result.record.id}")
    db.session.commit()
    response = send_bytes(result.content, result.record.content_type, result.record.filename)
    response.headers["X-Processed-Doc-Id"] = result.record.id
    response.headers["Access-Control-Expose-Headers"] = "X-Processed-Doc-Id, Content-Disposition"
    return response


@templates_bp.route("/<string:template_id>", methods=["DELETE"])
@roles_required("admin")
def delete_template(template_id):
    template = _template_or_404(template_id)
    # Issued documents keep pointing at the template they were generated from.
    issued = ProcessedDocument.query.filter(ProcessedDocument.template_id == template.id).count()
    if issued:
        raise ConflictError("Template has generated documents; delete those first", processedDocuments=issued)
    blob_key = template.blob_key
    DocumentRequest.query.filter(DocumentRequest.template_id == template.id).update(
        {"template_id": None}, synchronize_session=False
    )
    db.session.delete(template)
    log_action("TEMPLATE_DELETED", current_user, context=f"template:{template_id}")
    db.session.commit()
    # The row is gone first; a leftover blob is reclaimed by the sweep.
    get_blob_store().delete("templates", blob_key)
    current_app.logger.info("template_deleted", extra={"template_id": template_id})
    return jsonify({"message": "Template deleted"})
