"""Document request status machine with compare-and-swap transitions."""
from datetime import datetime, timedelta
from typing import Optional, Tuple

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import DOCUMENT_TYPES, PAYMENT_STATUSES, REQUEST_STATUSES, DocumentRequest
from utils.decorators import log_action
from utils.document_pipeline import without_system_fields
from utils.docx_template import has_xml_invalid
from utils.email_service import EmailDeliveryError, mail_configured, send_status_email
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.notification_payloads import DocumentStatusPayload
from utils.notification_service import notify
from utils.sms_service import SMSDeliveryError, send_sms, sms_configured

TRANSITIONS: dict[str, frozenset] = {
    "pending": frozenset({"processing", "approved", "rejected"}),
    "processing": frozenset({"approved", "rejected"}),
    "approved": frozenset({"completed"}),
    "rejected": frozenset(),
    "completed": frozenset(),
}

NOTIFY_ON: frozenset = frozenset({"approved", "rejected"})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def next_document_number(year: int) -> str:
    """``<year>-<5 digit sequence>``, one sequence per calendar year."""
    prefix = f"{year}-"
    latest = (
        db.session.query(func.max(DocumentRequest.document_number))
        .filter(DocumentRequest.document_number.like(f"{prefix}%"))
        .scalar()
    )
    sequence = int(latest.split("-", 1)[1]) + 1 if latest else 1
    return f"{prefix}{sequence:05d}"


def default_fee(document_type: str) -> float:
    return float((current_app.config.get("DOCUMENT_FEES") or {}).get(document_type, 0))


def create_request(requester, document_type: str, purpose: str, field_values: Optional[dict] = None) -> DocumentRequest:
    if document_type not in DOCUMENT_TYPES:
        raise ValidationError(f"Unsupported document type: {document_type}")
    if not purpose or not purpose.strip():
        raise ValidationError("Purpose is required")
    if has_xml_invalid(purpose):
        raise ValidationError("Purpose contains control characters", errors={"purpose": ["Remove control characters."]})
    # Document number, validity and transaction code come from the workflow, never the requester.
    field_values = without_system_fields(field_values or {})
    fee = default_fee(document_type)
    doc_request = DocumentRequest(
        document_type=document_type,
        requester_id=requester.id,
        requester_username=requester.username,
        requester_barangay_id=requester.barangay_id,
        purpose=purpose.strip(),
        status="pending",
        field_values={str(k): ("" if v is None else str(v)) for k, v in field_values.items()},
        payment_amount=fee,
        payment_status="waived" if fee == 0 else "pending",
    )
    db.session.add(doc_request)
    db.session.flush()
    log_action("REQUEST_CREATED", requester, context=f"document_request:{doc_request.id}")
    db.session.commit()
    current_app.logger.info(
        "document_request_created",
        extra={"request_id": doc_request.id, "document_type": document_type, "user_id": requester.id},
    )
    return doc_request


def transition(request_id: str, target: str, actor, remarks: Optional[str] = None) -> Tuple[DocumentRequest, bool]:
    """Move a request to ``target``; returns ``(request, changed)``.

    Re-applying the current status is a no-op. The write only lands if the row
    still holds the status read at the start, so concurrent staff actions
    cannot both fire the side effects.
    """
    if target not in REQUEST_STATUSES:
        raise ValidationError(f"Unknown status: {target}")
    doc_request = db.session.get(DocumentRequest, request_id)
    if not doc_request:
        raise NotFoundError("Document request not found")

    current = doc_request.status
    if current == target:
        return doc_request, False
    if not can_transition(current, target):
        raise ConflictError(f"Cannot change status from {current} to {target}", currentStatus=current)

    now = datetime.utcnow()
    values = {
        "status": target,
        "processed_by_id": actor.id,
        "date_processed": now,
        "updated_at": now,
    }
    if remarks is not None:
        values["remarks"] = remarks.strip()[:1000]

    attempts = int(current_app.config.get("DOCUMENT_NUMBER_ATTEMPTS", 5))
    validity = timedelta(days=int(current_app.config.get("DOCUMENT_VALIDITY_DAYS", 180)))
    updated = 0
    for attempt in range(1, attempts + 1):
        if target == "approved":
            # coalesce keeps any value assigned earlier.
            values["document_number"] = func.coalesce(DocumentRequest.document_number, next_document_number(now.year))
            values["valid_until"] = func.coalesce(DocumentRequest.valid_until, now + validity)
            values["date_approved"] = func.coalesce(DocumentRequest.date_approved, now)
        try:
            updated = (
                DocumentRequest.query.filter(DocumentRequest.id == request_id, DocumentRequest.status == current)
                .update(values, synchronize_session=False)
            )
            db.session.commit()
            break
        except IntegrityError:
            db.session.rollback()
            if target != "approved" or attempt == attempts:
                raise ConflictError("Unable to assign a document number")
            current_app.logger.warning("Document number collision", extra={"request_id": request_id, "attempt": attempt})

    db.session.expire_all()
    doc_request = db.session.get(DocumentRequest, request_id)
    if not updated:
        if doc_request.status == target:
            return doc_request, False
        raise ConflictError(
            "Request was modified by another action; reload and retry",
            currentStatus=doc_request.status,
        )

    log_action("REQUEST_STATUS_CHANGED", actor, context=f"document_request:{request_id}:{target}"[:120])
    db.session.commit()
    current_app.logger.info(
        "document_request_transitioned",
        extra={"request_id": request_id, "from": current, "to": target, "actor": actor.id},
    )

    if target in NOTIFY_ON:
        notify_requester(doc_request)
    return doc_request, True


def notify_requester(doc_request: DocumentRequest) -> None:
    label = doc_request.document_type.replace("_", " ").title()
    if doc_request.status == "approved":
        title = f"{label} approved"
        message = f"Your {label} request has been approved."
        if doc_request.document_number:
            message += f" Document number: {doc_request.document_number}."
    else:
        title = f"{label} rejected"
        message = f"Your {label} request was rejected."
        if doc_request.remarks:
            message += f" Remarks: {doc_request.remarks}"

    notify(
        doc_request.requester_id,
        "documents",
        title,
        message,
        DocumentStatusPayload(
            request_id=doc_request.id,
            status=doc_request.status,
            document_type=doc_request.document_type,
            document_number=doc_request.document_number,
            transaction_code=doc_request.transaction_code,
            remarks=doc_request.remarks,
        ),
    )

    if mail_configured():
        try:
            send_status_email(doc_request)
        except EmailDeliveryError as exc:
            current_app.logger.warning(
                "Status email not delivered",
                extra={"dependency": exc.dependency, "request_id": doc_request.id, "error": exc.message},
            )
    requester = doc_request.requester
    if sms_configured() and requester and requester.contact_number:
        try:
            send_sms(requester.contact_number, f"{title}. Ref: {doc_request.id[:8]}")
        except SMSDeliveryError as exc:
            current_app.logger.warning(
                "Status SMS not delivered",
                extra={"dependency": exc.dependency, "request_id": doc_request.id, "error": exc.message},
            )


def update_payment(request_id: str, payment_status: str, actor, amount: Optional[float] = None) -> DocumentRequest:
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status: {payment_status}")
    doc_request = db.session.get(DocumentRequest, request_id)
    if not doc_request:
        raise NotFoundError("Document request not found")
    if doc_request.status in ("rejected",):
        raise ConflictError("Payment cannot change on a rejected request")
    if amount is not None:
        if amount < 0:
            raise ValidationError("Amount cannot be negative")
        doc_request.payment_amount = amount
    doc_request.payment_status = payment_status
    doc_request.payment_date = datetime.utcnow() if payment_status == "paid" else None
    log_action("PAYMENT_UPDATED", actor, context=f"document_request:{request_id}:{payment_status}")
    db.session.commit()
    return doc_request
