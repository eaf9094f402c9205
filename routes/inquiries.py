"""Resident and guest inquiries, staff replies, and assignment."""
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from wtforms import SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional

from extensions import db
from models import INQUIRY_STATUSES, INQUIRY_TYPES, Inquiry, InquiryResponse, Message, User
from routes.forms import ApiForm, int_arg, json_body, load_form
from utils.decorators import log_action, roles_required
from utils.email_service import EmailDeliveryError, mail_configured, send_inquiry_reply_email
from utils.errors import Forbidden, NotFoundError, ValidationError
from utils.markdown_formatter import clean_user_text
from utils.notification_payloads import InquiryPayload
from utils.notification_service import notify, notify_role

inquiries_bp = Blueprint("inquiries", __name__, url_prefix="/api/inquiries")


class InquiryForm(ApiForm):
    subject = StringField("Subject", validators=[DataRequired(), Length(max=255)])
    message = TextAreaField("Message", validators=[DataRequired(), Length(max=5000)])
    inquiry_type = SelectField("Type", choices=[(t, t) for t in INQUIRY_TYPES], validators=[Optional()], default="General")


class ResponseForm(ApiForm):
    text = TextAreaField("Reply", validators=[DataRequired(), Length(max=5000)])


class InquiryUpdateForm(ApiForm):
    status = SelectField("Status", choices=[(s, s) for s in INQUIRY_STATUSES], validators=[Optional()])
    assigned_role = SelectField("Assigned Role", choices=[("staff", "staff"), ("admin", "admin")], validators=[Optional()])


def _inquiry_or_404(inquiry_id: str) -> Inquiry:
    inquiry = db.session.get(Inquiry, inquiry_id)
    if not inquiry:
        raise NotFoundError("Inquiry not found")
    return inquiry


def _is_owner(inquiry: Inquiry) -> bool:
    if current_user.is_guest:
        return inquiry.guest_id == current_user.id
    return inquiry.created_by_id == current_user.id


def _parse_datetime(value: str, field: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except (AttributeError, ValueError):
        raise ValidationError(f"{field} must be an ISO 8601 timestamp")


def _owner_contact(inquiry: Inquiry) -> tuple[str | None, str]:
    if inquiry.created_by:
        return inquiry.created_by.email, inquiry.created_by.full_name
    if inquiry.guest:
        return inquiry.guest.email, inquiry.guest.name
    return None, ""


@inquiries_bp.route("", methods=["POST"])
@roles_required("resident", "guest")
def create_inquiry():
    form = load_form(InquiryForm)
    inquiry = Inquiry(
        subject=clean_user_text(form.subject.data, 255),
        message=clean_user_text(form.message.data),
        inquiry_type=form.inquiry_type.data or "General",
        status="open",
    )
    if current_user.is_guest:
        inquiry.guest_id = current_user.id
    else:
        inquiry.created_by_id = current_user.id
    db.session.add(inquiry)
    db.session.flush()
    log_action("INQUIRY_CREATED", current_user, context=f"inquiry:{inquiry.id}")
    db.session.commit()
    current_app.logger.info("inquiry_created", extra={"inquiry_id": inquiry.id, "guest": current_user.is_guest})

    notify_role(
        "staff",
        "inquiries",
        "New inquiry",
        f"{inquiry.inquiry_type}: {inquiry.subject}",
        InquiryPayload(inquiry_id=inquiry.id, status=inquiry.status, subject=inquiry.subject),
    )
    return jsonify({"inquiry": inquiry.to_dict()}), 201


@inquiries_bp.route("/mine", methods=["GET"])
@roles_required("resident", "guest")
def my_inquiries():
    if current_user.is_guest:
        query = Inquiry.query.filter(Inquiry.guest_id == current_user.id)
    else:
        query = Inquiry.query.filter(Inquiry.created_by_id == current_user.id)
    items = query.order_by(Inquiry.created_at.desc()).all()
    return jsonify({"inquiries": [i.to_dict(with_responses=True) for i in items]})


@inquiries_bp.route("", methods=["GET"])
@roles_required("staff", "admin")
def list_inquiries():
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", 20)
    query = Inquiry.query
    status = request.args.get("status")
    if status:
        if status not in INQUIRY_STATUSES:
            raise ValidationError("Unknown status filter")
        query = query.filter(Inquiry.status == status)
    if request.args.get("assignedTo") == "me":
        query = query.filter(Inquiry.assigned_to_id == current_user.id)
    elif request.args.get("assignedRole"):
        query = query.filter(Inquiry.assigned_role == request.args["assignedRole"])
    if request.args.get("type"):
        query = query.filter(Inquiry.inquiry_type == request.args["type"])
    total = query.count()
    items = query.order_by(Inquiry.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"inquiries": [i.to_dict() for i in items], "total": total, "page": page, "limit": limit})


@inquiries_bp.route("/<string:inquiry_id>", methods=["GET"])
@roles_required("resident", "guest", "staff", "admin")
def get_inquiry(inquiry_id):
    inquiry = _inquiry_or_404(inquiry_id)
    if not current_user.is_staff and not _is_owner(inquiry):
        raise Forbidden()
    return jsonify({"inquiry": inquiry.to_dict(with_responses=True)})


@inquiries_bp.route("/<string:inquiry_id>/responses", methods=["POST"])
@roles_required("resident", "guest", "staff", "admin")
def respond(inquiry_id):
    inquiry = _inquiry_or_404(inquiry_id)
    staff_reply = current_user.is_staff
    if not staff_reply and not _is_owner(inquiry):
        raise Forbidden()
    if inquiry.status == "resolved" and not staff_reply:
        raise ValidationError("This inquiry is already resolved")

    form = load_form(ResponseForm)
    text = clean_user_text(form.text.data)
    author_name = current_user.name if current_user.is_guest else current_user.full_name
    response = InquiryResponse(
        inquiry=inquiry,
        author_id=None if current_user.is_guest else current_user.id,
        author_name=author_name,
        author_role=current_user.role_name,
        text=text,
    )
    db.session.add(response)
    if staff_reply and inquiry.status == "open":
        inquiry.status = "in-progress"
    if staff_reply and inquiry.created_by_id:
        db.session.add(
            Message(
                sender_id=current_user.id,
                recipient_id=inquiry.created_by_id,
                inquiry_id=inquiry.id,
                subject=f"Re: {inquiry.subject}"[:255],
                text=text,
            )
        )
    log_action("INQUIRY_RESPONSE", current_user, context=f"inquiry:{inquiry.id}")
    db.session.commit()

    payload = InquiryPayload(inquiry_id=inquiry.id, status=inquiry.status, subject=inquiry.subject)
    if staff_reply:
        if inquiry.created_by_id:
            notify(inquiry.created_by_id, "inquiries", "Reply to your inquiry", f"Staff replied to: {inquiry.subject}", payload)
        email, name = _owner_contact(inquiry)
        if email and mail_configured():
            try:
                send_inquiry_reply_email(email, name, inquiry, text)
            except EmailDeliveryError as exc:
                current_app.logger.warning(
                    "Inquiry reply email not delivered",
                    extra={"dependency": exc.dependency, "inquiry_id": inquiry.id, "error": exc.message},
                )
    elif inquiry.assigned_to_id:
        notify(inquiry.assigned_to_id, "inquiries", "Inquiry follow-up", f"New message on: {inquiry.subject}", payload)
    else:
        notify_role("staff", "inquiries", "Inquiry follow-up", f"New message on: {inquiry.subject}", payload)

    return jsonify({"inquiry": inquiry.to_dict(with_responses=True)}), 201


@inquiries_bp.route("/<string:inquiry_id>", methods=["PATCH"])
@roles_required("staff", "admin")
def update_inquiry(inquiry_id):
    inquiry = _inquiry_or_404(inquiry_id)
    form = load_form(InquiryUpdateForm)
    body = json_body()
    previous_status = inquiry.status
    newly_assigned = None

    if form.status.data:
        inquiry.status = form.status.data
    if "assignedTo" in body:
        assignee_id = body.get("assignedTo")
        if assignee_id:
            assignee = db.session.get(User, str(assignee_id))
            if not assignee or not assignee.is_staff or not assignee.is_active:
                raise ValidationError("Inquiries can only be assigned to active staff")
            if inquiry.assigned_to_id != assignee.id:
                newly_assigned = assignee
            inquiry.assigned_to_id = assignee.id
        else:
            inquiry.assigned_to_id = None
    if form.assigned_role.data:
        inquiry.assigned_role = form.assigned_role.data
    if "scheduledAt" in body:
        scheduled = body.get("scheduledAt")
        inquiry.scheduled_at = _parse_datetime(scheduled, "scheduledAt") if scheduled else None
        if inquiry.scheduled_at and not form.status.data:
            inquiry.status = "scheduled"

    log_action("INQUIRY_UPDATED", current_user, context=f"inquiry:{inquiry.id}")
    db.session.commit()

    payload = InquiryPayload(inquiry_id=inquiry.id, status=inquiry.status, subject=inquiry.subject)
    if newly_assigned is not None and newly_assigned.id != current_user.id:
        notify(newly_assigned.id, "inquiries", "Inquiry assigned to you", inquiry.subject, payload)
    if inquiry.status != previous_status and inquiry.created_by_id:
        notify(
            inquiry.created_by_id,
            "inquiries",
            "Inquiry status updated",
            f"{inquiry.subject} is now {inquiry.status}.",
            payload,
        )
    return jsonify({"inquiry": inquiry.to_dict(with_responses=True)})
