"""Template filling pipeline: substitution, QR embedding, and persistence of generated documents."""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import DocumentRequest, ProcessedDocument, Template
from utils.blob_store import get_blob_store
from utils.docx_template import (
    DOCX_CONTENT_TYPE,
    DocxTemplate,
    is_qr_marker,
    normalize_field_name,
    strip_xml_invalid,
)
from utils.errors import DependencyError, MissingFieldValue, NotFoundError, ValidationError
from utils.pdf_generator import render_preview_pdf
from utils.qr_service import document_qr_png
from utils.transaction_code import candidate_code, ensure_transaction_code

# Present in templates but owned by the system; blank when not yet assigned.
SYSTEM_FIELDS: tuple[str, ...] = ("documentNumber", "validUntil", "transactionCode", "qr")
_SYSTEM_KEYS = {normalize_field_name(name): name for name in SYSTEM_FIELDS}

DATE_FORMAT = "%B %d, %Y"


@dataclass
class GenerationResult:
    content: bytes
    transaction_code: Optional[str]
    record: ProcessedDocument


def system_field(name: str) -> Optional[str]:
    """Canonical system field a placeholder or submitted key refers to, if any."""
    if is_qr_marker(name):
        return "qr"
    return _SYSTEM_KEYS.get(normalize_field_name(name))


def without_system_fields(values: Mapping[str, object]) -> Dict[str, object]:
    return {key: value for key, value in values.items() if system_field(key) is None}


def _stringify(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime(DATE_FORMAT)
    return strip_xml_invalid(str(value))


def request_field_defaults(doc_request: DocumentRequest) -> Dict[str, str]:
    """Values every template may reference for a request without the caller supplying them."""
    requester = doc_request.requester
    defaults = {
        "fullName": requester.full_name if requester else "",
        "username": doc_request.requester_username,
        "barangayID": doc_request.requester_barangay_id or "",
        "address": (requester.address if requester else "") or "",
        "purpose": doc_request.purpose,
        "documentType": doc_request.document_type.replace("_", " ").title(),
        "dateIssued": datetime.utcnow().strftime(DATE_FORMAT),
    }
    return defaults


def resolve_field_values(
    placeholders: List[str],
    supplied: Mapping[str, object],
    system: Optional[Mapping[str, object]] = None,
) -> Dict[str, str]:
    """Map each placeholder to its text or raise ``MissingFieldValue`` listing the gaps.

    System fields only ever take the assigned system value, or blank; caller
    values never reach them. Other fields use the exact supplied key, then a
    loosely matched one (case and punctuation ignored).
    """
    system = system or {}
    loose = {normalize_field_name(key): value for key, value in supplied.items()}
    resolved: Dict[str, str] = {}
    missing: List[str] = []
    for name in placeholders:
        owner = system_field(name)
        if owner is not None:
            resolved[name] = _stringify(system.get(owner)) or ""
            continue
        value = _stringify(supplied.get(name))
        if value is None:
            value = _stringify(loose.get(normalize_field_name(name)))
        if value is None:
            missing.append(name)
            continue
        resolved[name] = value
    if missing:
        raise MissingFieldValue(missing)
    return resolved


def _system_values(doc_request: Optional[DocumentRequest], transaction_code: Optional[str]) -> Dict[str, object]:
    values: Dict[str, object] = {"transactionCode": transaction_code, "qr": transaction_code}
    if doc_request is not None:
        values["documentNumber"] = doc_request.document_number
        values["validUntil"] = doc_request.valid_until
    return values


def _apply_system_values(resolved: Dict[str, str], system: Mapping[str, object]) -> None:
    for name in list(resolved):
        owner = system_field(name)
        if owner is None:
            continue
        value = _stringify(system.get(owner))
        if value:
            resolved[name] = value


def _load_template(template_id: str) -> tuple[Template, bytes]:
    template = db.session.get(Template, template_id)
    if not template:
        raise NotFoundError("Template not found")
    return template, get_blob_store().get("templates", template.blob_key)


def generate(
    template_id: str,
    field_values: Optional[Mapping[str, object]] = None,
    request_id: Optional[str] = None,
    actor=None,
) -> GenerationResult:
    template, source = _load_template(template_id)
    editor = DocxTemplate(source)
    placeholders = editor.placeholders()

    doc_request: Optional[DocumentRequest] = None
    supplied: Dict[str, object] = {}
    if request_id:
        doc_request = db.session.get(DocumentRequest, request_id)
        if not doc_request:
            raise NotFoundError("Document request not found")
        supplied.update(request_field_defaults(doc_request))
        supplied.update(doc_request.field_values or {})
    supplied.update(field_values or {})

    # Fail on missing input before any code is minted.
    resolved = resolve_field_values(placeholders, supplied, _system_values(doc_request, None))

    transaction_code = None
    if doc_request is not None:
        transaction_code = ensure_transaction_code(doc_request.id)
        doc_request = db.session.get(DocumentRequest, request_id)
    _apply_system_values(resolved, _system_values(doc_request, transaction_code))

    qr_runs = editor.substitute(resolved)
    if transaction_code and qr_runs:
        png = document_qr_png(transaction_code)
        for paragraph, run in qr_runs:
            editor.add_picture_after(paragraph, run, png)
    content = editor.to_bytes()

    filename = f"{transaction_code}.docx" if transaction_code else f"filled_{template.id}.docx"
    store = get_blob_store()
    stored = store.put("processed_documents", content, extension=".docx")

    try:
        record = ProcessedDocument(
            filename=filename,
            content_type=DOCX_CONTENT_TYPE,
            size=stored["size"],
            sha256=stored["sha256"],
            blob_key=stored["key"],
            template_id=template.id,
            request_id=doc_request.id if doc_request else None,
            transaction_code=transaction_code,
            uploaded_by_id=getattr(actor, "id", None) if actor is not None and not actor.is_guest else None,
        )
        db.session.add(record)
        db.session.flush()
        if doc_request is not None:
            doc_request.processed_document_id = record.id
            doc_request.template_id = template.id
            caller_values = without_system_fields(field_values or {})
            if caller_values:
                merged = dict(doc_request.field_values or {})
                merged.update({k: _stringify(v) for k, v in caller_values.items()})
                doc_request.field_values = merged
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        store.delete("processed_documents", stored["key"])
        raise DependencyError("Unable to record generated document", dependency="database") from exc

    current_app.logger.info(
        "document_generated",
        extra={
            "template_id": template.id,
            "request_id": record.request_id,
            "processed_document_id": record.id,
            "size": record.size,
            "qr_embedded": bool(transaction_code and qr_runs),
        },
    )
    return GenerationResult(content=content, transaction_code=transaction_code, record=record)


PREVIEW_FORMATS: tuple[str, ...] = ("html", "pdf", "text")


def preview(template_id: str, field_values: Optional[Mapping[str, object]] = None, fmt: str = "html"):
    """Render a template, optionally filled, without persisting anything.

    Returns ``(body, mimetype)``. A throwaway transaction code stands in for
    the QR marker so reviewers can see where it lands.
    """
    if fmt not in PREVIEW_FORMATS:
        raise ValidationError(f"Unsupported preview format: {fmt}")
    template, source = _load_template(template_id)
    editor = DocxTemplate(source)

    if field_values is not None:
        resolved = resolve_field_values(editor.placeholders(), field_values)
        _apply_system_values(resolved, {"qr": candidate_code(template.id), "transactionCode": None})
        editor.substitute(resolved)

    if fmt == "html":
        return editor.to_html(), "text/html"
    if fmt == "text":
        return editor.to_text(), "text/plain"
    return render_preview_pdf(template.name, [editor.paragraph_text(p) for p in editor.iter_paragraphs()]), "application/pdf"
