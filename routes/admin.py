"""Administration: accounts, officials, settings, statistics, and ID verification review."""
import time
from datetime import date, datetime

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy import func, or_
from wtforms import BooleanField, IntegerField, SelectField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional

from extensions import db
from models import (
    ROLE_NAMES,
    AuditLog,
    DocumentRequest,
    Inquiry,
    Official,
    Role,
    SystemSetting,
    User,
    VerificationRequest,
)
from routes.forms import ApiForm, int_arg, json_body, load_form, send_bytes
from utils.blob_store import get_blob_store
from utils.decorators import log_action, roles_required
from utils.email_service import EmailDeliveryError, mail_configured, send_test_email
from utils.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from utils.notification_payloads import SystemPayload
from utils.notification_service import notify

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")

STATS_CACHE: dict[str, dict] = {}


class UserUpdateForm(ApiForm):
    role = SelectField("Role", choices=[(r, r) for r in ROLE_NAMES], validators=[Optional()])


class OfficialForm(ApiForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])
    position = StringField("Position", validators=[DataRequired(), Length(max=120)])
    committee = StringField("Committee", validators=[Optional(), Length(max=255)])
    contact_number = StringField("Contact Number", validators=[Optional(), Length(max=40)])
    email = StringField("Email", validators=[Optional(), Email(), Length(max=255)])
    term_start = StringField("Term Start", validators=[Optional()])
    term_end = StringField("Term End", validators=[Optional()])
    display_order = IntegerField("Display Order", validators=[Optional()])
    is_active = BooleanField("Active", default=True)


class ReviewForm(ApiForm):
    status = SelectField("Decision", choices=[("approved", "approved"), ("rejected", "rejected")], validators=[DataRequired()])
    notes = StringField("Notes", validators=[Optional(), Length(max=1000)])


def _parse_date(value, field: str):
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date")


def _user_or_404(user_id: str) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def _official_or_404(official_id: int) -> Official:
    official = db.session.get(Official, official_id)
    if not official:
        raise NotFoundError("Official not found")
    return official


# -- Users -------------------------------------------------------------------


@admin_bp.route("/users", methods=["GET"])
@roles_required("admin")
def list_users():
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", 20)
    query = User.query.join(Role)
    role = request.args.get("role")
    if role:
        query = query.filter(Role.name == role)
    active = request.args.get("active")
    if active in ("true", "false"):
        query = query.filter(User.is_active.is_(active == "true"))
    search = request.args.get("search")
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(User.username.ilike(pattern), User.full_name.ilike(pattern), User.email.ilike(pattern))
        )
    total = query.count()
    items = query.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"users": [u.to_dict() for u in items], "total": total, "page": page, "limit": limit})


@admin_bp.route("/users/<string:user_id>", methods=["PATCH"])
@roles_required("admin")
def update_user(user_id):
    user = _user_or_404(user_id)
    form = load_form(UserUpdateForm)
    body = json_body()
    activated = False

    if form.role.data and form.role.data != user.role_name:
        if user.id == current_user.id:
            raise ValidationError("Administrators cannot change their own role")
        user.role = Role.get_or_create(form.role.data)
    if "isActive" in body:
        is_active = bool(body["isActive"])
        if user.id == current_user.id and not is_active:
            raise ValidationError("Administrators cannot deactivate themselves")
        activated = is_active and not user.is_active
        user.is_active = is_active
    if "isVerified" in body:
        user.is_verified = bool(body["isVerified"])

    log_action("USER_UPDATED", current_user, context=f"user:{user.id}")
    db.session.commit()
    current_app.logger.info("user_updated", extra={"user_id": user.id, "by": current_user.id})

    if activated:
        notify(user.id, "system", "Account activated", "Your account has been approved and is now active.", SystemPayload())
    return jsonify({"user": user.to_dict()})


# -- Officials -----------------------------------------------------------------


def _apply_official(official: Official, form: OfficialForm) -> None:
    official.name = form.name.data.strip()
    official.position = form.position.data.strip()
    official.committee = (form.committee.data or "").strip() or None
    official.contact_number = (form.contact_number.data or "").strip() or None
    official.email = (form.email.data or "").strip().lower() or None
    official.term_start = _parse_date(form.term_start.data, "termStart")
    official.term_end = _parse_date(form.term_end.data, "termEnd")
    if official.term_start and official.term_end and official.term_end < official.term_start:
        raise ValidationError("termEnd cannot be before termStart")
    official.display_order = form.display_order.data or 0
    if form.is_active.raw_data:
        official.is_active = bool(form.is_active.data)
    elif official.is_active is None:
        official.is_active = True


@admin_bp.route("/officials", methods=["GET"])
@roles_required("admin")
def list_officials():
    items = Official.query.order_by(Official.display_order, Official.name).all()
    return jsonify({"officials": [o.to_dict() for o in items]})


@admin_bp.route("/officials", methods=["POST"])
@roles_required("admin")
def create_official():
    form = load_form(OfficialForm)
    official = Official()
    _apply_official(official, form)
    db.session.add(official)
    db.session.flush()
    log_action("OFFICIAL_CREATED", current_user, context=f"official:{official.id}")
    db.session.commit()
    return jsonify({"official": official.to_dict()}), 201


@admin_bp.route("/officials/<int:official_id>", methods=["PUT"])
@roles_required("admin")
def update_official(official_id):
    official = _official_or_404(official_id)
    form = load_form(OfficialForm)
    _apply_official(official, form)
    log_action("OFFICIAL_UPDATED", current_user, context=f"official:{official.id}")
    db.session.commit()
    return jsonify({"official": official.to_dict()})


@admin_bp.route("/officials/<int:official_id>", methods=["DELETE"])
@roles_required("admin")
def delete_official(official_id):
    official = _official_or_404(official_id)
    db.session.delete(official)
    log_action("OFFICIAL_DELETED", current_user, context=f"official:{official_id}")
    db.session.commit()
    return jsonify({"message": "Official removed"})


# -- Settings --------------------------------------------------------------------


@admin_bp.route("/settings", methods=["GET"])
@roles_required("admin")
def get_settings():
    return jsonify({"settings": SystemSetting.as_mapping()})


@admin_bp.route("/settings", methods=["PUT"])
@roles_required("admin")
def update_settings():
    body = json_body()
    settings = body.get("settings", body)
    if not isinstance(settings, dict) or not settings:
        raise ValidationError("settings must be a non-empty object")
    for key, value in settings.items():
        key = str(key).strip()
        if not key or len(key) > 80:
            raise ValidationError("Setting keys must be 1-80 characters", key=key)
        setting = db.session.get(SystemSetting, key) or SystemSetting(key=key)
        setting.value = value
        setting.updated_by_id = current_user.id
        db.session.add(setting)
    log_action("SETTINGS_UPDATED", current_user, context=",".join(sorted(settings))[:120])
    db.session.commit()
    return jsonify({"settings": SystemSetting.as_mapping()})


# -- Statistics ------------------------------------------------------------------


def _grouped(column, *filters) -> dict:
    query = db.session.query(column, func.count()).group_by(column)
    for condition in filters:
        query = query.filter(condition)
    return {key: count for key, count in query.all()}


def _build_statistics() -> dict:
    revenue = (
        db.session.query(func.coalesce(func.sum(DocumentRequest.payment_amount), 0))
        .filter(DocumentRequest.payment_status == "paid")
        .scalar()
    )
    return {
        "requestsByStatus": _grouped(DocumentRequest.status),
        "requestsByType": _grouped(DocumentRequest.document_type),
        "paymentsByStatus": _grouped(DocumentRequest.payment_status),
        "inquiriesByStatus": _grouped(Inquiry.status),
        "usersByRole": {
            name: count
            for name, count in db.session.query(Role.name, func.count(User.id)).join(User).group_by(Role.name).all()
        },
        "pendingStaffApprovals": User.query.join(Role).filter(Role.name == "staff", User.is_active.is_(False)).count(),
        "pendingVerifications": VerificationRequest.query.filter_by(status="pending").count(),
        "revenue": float(revenue or 0),
        "generatedAt": datetime.utcnow().isoformat(),
    }


@admin_bp.route("/statistics", methods=["GET"])
@roles_required("staff", "admin")
def statistics():
    cache_ttl = int(current_app.config.get("STATS_CACHE_SECONDS", 60))
    now = time.time()
    cached = STATS_CACHE.get("dashboard")
    if cached and cached.get("expires", 0) > now and request.args.get("refresh") != "true":
        stats = cached.get("data", {})
    else:
        stats = _build_statistics()
        STATS_CACHE["dashboard"] = {"data": stats, "expires": now + cache_ttl}
    return jsonify({"statistics": stats, "cacheWindow": cache_ttl})


@admin_bp.route("/audit-logs", methods=["GET"])
@roles_required("admin")
def audit_logs():
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", 50)
    query = AuditLog.query
    if request.args.get("action"):
        query = query.filter(AuditLog.action_type == request.args["action"])
    if request.args.get("userId"):
        query = query.filter(AuditLog.user_id == request.args["userId"])
    total = query.count()
    items = query.order_by(AuditLog.timestamp.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify(
        {
            "logs": [
                {
                    "id": log.id,
                    "userId": log.user_id,
                    "action": log.action_type,
                    "context": log.context_entity,
                    "ipAddress": log.ip_address,
                    "timestamp": log.timestamp.isoformat(),
                }
                for log in items
            ],
            "total": total,
            "page": page,
            "limit": limit,
        }
    )


@admin_bp.route("/test-email", methods=["POST"])
@roles_required("admin")
def test_email():
    if not mail_configured():
        raise DependencyError("Outbound email is not configured", dependency="smtp")
    recipient = (json_body().get("to") or current_user.email or "").strip()
    if not recipient:
        raise ValidationError("A recipient address is required")
    try:
        send_test_email(recipient)
    except EmailDeliveryError:
        current_app.logger.exception("Test email failed", extra={"recipient": recipient})
        raise
    return jsonify({"message": f"Test email sent to {recipient}"})


# -- Verification review ----------------------------------------------------------


@admin_bp.route("/verification-requests", methods=["GET"])
@roles_required("staff", "admin")
def list_verification_requests():
    query = VerificationRequest.query
    status = request.args.get("status")
    if status:
        query = query.filter(VerificationRequest.status == status)
    items = query.order_by(VerificationRequest.created_at.desc()).all()
    return jsonify({"verificationRequests": [v.to_dict() for v in items]})


@admin_bp.route("/verification-requests/<string:verification_id>/document", methods=["GET"])
@roles_required("staff", "admin")
def verification_document(verification_id):
    record = db.session.get(VerificationRequest, verification_id)
    if not record:
        raise NotFoundError("Verification request not found")
    data = get_blob_store().get("verification_documents", record.blob_key)
    return send_bytes(data, record.content_type, record.filename, as_attachment=False)


@admin_bp.route("/verification-requests/<string:verification_id>", methods=["PATCH"])
@roles_required("staff", "admin")
def review_verification(verification_id):
    record = db.session.get(VerificationRequest, verification_id)
    if not record:
        raise NotFoundError("Verification request not found")
    form = load_form(ReviewForm)
    status = form.status.data
    notes = (form.notes.data or "").strip() or None
    # Only the reviewer whose write finds the row still pending gets to act on it.
    updated = VerificationRequest.query.filter(
        VerificationRequest.id == record.id, VerificationRequest.status == "pending"
    ).update(
        {"status": status, "notes": notes, "reviewed_by_id": current_user.id, "reviewed_at": datetime.utcnow()},
        synchronize_session=False,
    )
    if not updated:
        db.session.rollback()
        db.session.expire_all()
        current = db.session.get(VerificationRequest, verification_id)
        raise ConflictError("Verification request was already reviewed", currentStatus=current.status if current else None)
    if status == "approved" and record.user:
        record.user.is_verified = True
    log_action("VERIFICATION_REVIEWED", current_user, context=f"verification:{record.id}:{status}")
    db.session.commit()
    db.session.expire_all()
    record = db.session.get(VerificationRequest, verification_id)

    message = "Your identity has been verified." if status == "approved" else "Your ID verification was not approved."
    if notes:
        message += f" Notes: {notes}"
    notify(record.user_id, "system", "ID verification reviewed", message, SystemPayload(extra={"status": status}))
    return jsonify({"verificationRequest": record.to_dict()})
