"""Authentication blueprint: accounts, bearer tokens, and guest sessions."""
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, make_response, request, session
from flask_login import current_user, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from sqlalchemy import func, or_
from wtforms import PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional, Regexp

from extensions import db
from models import GUEST_ROLE, RESET_MODES, Guest, Role, User
from routes.forms import ApiForm, load_form
from utils.decorators import auth_required, log_action
from utils.email_service import EmailDeliveryError, mail_configured, send_password_reset_email
from utils.errors import ConflictError, Forbidden, Unauthorized, ValidationError
from utils.notification_payloads import StaffApprovalPayload
from utils.notification_service import notify_role
from utils.password_reset import consume_reset_token, issue_reset_token
from utils.security import create_access_token, generate_token, password_meets_policy, reset_attempts, track_attempt
from utils.sms_service import PHONE_PATTERN

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


ROLE_CHOICES: list[tuple[str, str]] = [
    ("resident", "Resident"),
    ("staff", "Staff"),
]

PHONE_MESSAGE = "Contact number may only contain digits, spaces, +, - and parentheses."


class RegistrationForm(ApiForm):
    username = StringField("Username", validators=[DataRequired(), Length(min=3, max=80)])
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=10)])
    contact_number = StringField(
        "Contact Number", validators=[Optional(), Length(max=40), Regexp(PHONE_PATTERN.pattern, message=PHONE_MESSAGE)]
    )
    address = StringField("Address", validators=[Optional(), Length(max=500)])
    barangay_id = StringField("Barangay ID", validators=[Optional(), Length(max=40)])
    role = SelectField("Role", choices=ROLE_CHOICES, validators=[Optional()], default="resident")


class LoginForm(ApiForm):
    username = StringField("Username or email", validators=[DataRequired(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])


class GuestForm(ApiForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])
    contact_number = StringField(
        "Contact Number", validators=[DataRequired(), Length(max=40), Regexp(PHONE_PATTERN.pattern, message=PHONE_MESSAGE)]
    )
    email = StringField("Email", validators=[Optional(), Email(), Length(max=255)])
    intent = StringField("Purpose of visit", validators=[Optional(), Length(max=255)])


class ProfileForm(ApiForm):
    full_name = StringField("Full Name", validators=[Optional(), Length(max=150)])
    contact_number = StringField(
        "Contact Number", validators=[Optional(), Length(max=40), Regexp(PHONE_PATTERN.pattern, message=PHONE_MESSAGE)]
    )
    address = StringField("Address", validators=[Optional(), Length(max=500)])


class PasswordChangeForm(ApiForm):
    current_password = PasswordField("Current Password", validators=[DataRequired()])
    new_password = PasswordField("New Password", validators=[DataRequired(), Length(min=10)])


class ForgotPasswordForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    mode = SelectField("Mode", choices=[(m, m) for m in RESET_MODES], validators=[Optional()], default="link")


class ResetPasswordForm(ApiForm):
    token = StringField("Token", validators=[Optional(), Length(max=255)])
    password = PasswordField("New Password", validators=[DataRequired(), Length(min=10)])


def _token_response(payload: dict, token: str, status: int = 200, max_age: int | None = None):
    response = make_response(jsonify({**payload, "token": token}), status)
    response.set_cookie(
        current_app.config.get("JWT_COOKIE_NAME", "token"),
        token,
        max_age=max_age or int(current_app.config.get("JWT_EXPIRES_MINUTES", 1440)) * 60,
        httponly=True,
        samesite="Lax",
        secure=current_app.config.get("SESSION_COOKIE_SECURE", True),
    )
    return response


@auth_bp.route("/register", methods=["POST"])
def register():
    form = load_form(RegistrationForm)
    password_ok, reason = password_meets_policy(form.password.data)
    if not password_ok:
        raise ValidationError(reason, errors={"password": [reason]})

    username = form.username.data.strip()
    email = form.email.data.lower().strip()
    barangay_id = (form.barangay_id.data or "").strip() or None
    for column, value in (("username", username), ("email", email), ("barangay_id", barangay_id)):
        if value and User.query.filter(func.lower(getattr(User, column)) == value.lower()).first():
            raise ConflictError("Duplicate key error", keyValue={column: value})

    role_name = form.role.data or "resident"
    is_staff = role_name == "staff"
    user = User(
        username=username,
        full_name=form.full_name.data.strip(),
        email=email,
        contact_number=(form.contact_number.data or "").strip() or None,
        address=(form.address.data or "").strip() or None,
        barangay_id=barangay_id,
        role=Role.get_or_create(role_name),
        # Staff accounts wait for an administrator.
        is_active=not is_staff,
    )
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.flush()
    log_action("REGISTER", user)
    db.session.commit()
    current_app.logger.info("user_registered", extra={"user_id": user.id, "role": role_name})

    if is_staff:
        notify_role(
            "admin",
            "staff_approval",
            "Staff account awaiting approval",
            f"{user.full_name} ({user.username}) registered as staff.",
            StaffApprovalPayload(staff_user_id=user.id, username=user.username, email=user.email),
        )
        return jsonify({"message": "Registration received. An administrator must approve staff accounts.", "user": user.to_dict()}), 201

    token = create_access_token(user.id, user.role_name)
    return _token_response({"user": user.to_dict()}, token, status=201)


@auth_bp.route("/login", methods=["POST"])
def login():
    form = load_form(LoginForm)
    identifier = form.username.data.strip().lower()
    attempt_key = f"login:{request.remote_addr}:{identifier}"
    if not track_attempt(attempt_key, limit=int(current_app.config.get("LOGIN_ATTEMPT_LIMIT", 10))):
        raise Forbidden("Too many login attempts. Try again later.")

    user = User.query.filter(or_(func.lower(User.username) == identifier, func.lower(User.email) == identifier)).first()
    if not user or not user.check_password(form.password.data):
        log_action("LOGIN_FAILED", user)
        db.session.commit()
        raise Unauthorized("Invalid credentials")

    if not user.is_active:
        raise Forbidden("Account is inactive or awaiting approval")

    reset_attempts(attempt_key)
    login_user(user)
    session.permanent = True
    user.last_login_at = datetime.utcnow()
    log_action("LOGIN", user)
    db.session.commit()

    token = create_access_token(user.id, user.role_name)
    return _token_response({"user": user.to_dict()}, token)


@auth_bp.route("/logout", methods=["POST"])
def logout():
    user = current_user if current_user.is_authenticated else None
    logout_user()
    session.clear()
    if user is not None:
        log_action("LOGOUT", user)
        db.session.commit()
    response = make_response(jsonify({"message": "Logged out"}))
    response.delete_cookie(current_app.config.get("JWT_COOKIE_NAME", "token"))
    return response


@auth_bp.route("/me", methods=["GET"])
@auth_required(allow_guest=True)
def me():
    return jsonify({"user": current_user.to_dict()})


@auth_bp.route("/csrf", methods=["GET"])
def csrf_token():
    return jsonify({"csrfToken": generate_csrf()})


@auth_bp.route("/profile", methods=["PUT"])
@auth_required()
def update_profile():
    form = load_form(ProfileForm)
    if form.full_name.raw_data and form.full_name.data.strip():
        current_user.full_name = form.full_name.data.strip()
    # Only fields present in the body are touched.
    if form.contact_number.raw_data:
        current_user.contact_number = form.contact_number.data.strip() or None
    if form.address.raw_data:
        current_user.address = form.address.data.strip() or None
    log_action("PROFILE_UPDATED", current_user)
    db.session.commit()
    return jsonify({"user": current_user.to_dict()})


@auth_bp.route("/password", methods=["PUT"])
@auth_required()
def change_password():
    form = load_form(PasswordChangeForm)
    if not current_user.check_password(form.current_password.data):
        raise ValidationError("Current password is incorrect")
    password_ok, reason = password_meets_policy(form.new_password.data)
    if not password_ok:
        raise ValidationError(reason, errors={"new_password": [reason]})
    current_user.set_password(form.new_password.data)
    log_action("PASSWORD_CHANGED", current_user)
    db.session.commit()
    return jsonify({"message": "Password updated"})


@auth_bp.route("/forgot-password", methods=["POST"])
def forgot_password():
    form = load_form(ForgotPasswordForm)
    email = form.email.data.strip().lower()
    mode = form.mode.data or "link"
    generic = {"message": "If that email is registered, reset instructions have been sent."}
    if not track_attempt(f"forgot:{request.remote_addr}", limit=int(current_app.config.get("LOGIN_ATTEMPT_LIMIT", 10))):
        raise Forbidden("Too many reset requests. Try again later.")

    user = User.query.filter(func.lower(User.email) == email).first()
    # The response never reveals whether the address belongs to an account.
    if not user or not user.is_active:
        return jsonify(generic)

    secret, expires_at = issue_reset_token(user, mode)
    if mail_configured():
        try:
            send_password_reset_email(user, secret, mode, expires_at)
        except EmailDeliveryError as exc:
            current_app.logger.warning("password_reset_email_failed", extra={"user_id": user.id, "error": str(exc)})
    else:
        current_app.logger.warning("password_reset_email_skipped", extra={"user_id": user.id, "reason": "mail not configured"})
    return jsonify(generic)


@auth_bp.route("/reset-password", methods=["POST"])
@auth_bp.route("/reset-password/<string:token>", methods=["POST"])
def reset_password(token=None):
    form = load_form(ResetPasswordForm)
    secret = token or (form.token.data or "").strip()
    if not secret:
        raise ValidationError("Token is required", errors={"token": ["This field is required."]})
    if not track_attempt(f"reset:{request.remote_addr}", limit=int(current_app.config.get("LOGIN_ATTEMPT_LIMIT", 10))):
        raise Forbidden("Too many reset attempts. Try again later.")
    user = consume_reset_token(secret, form.password.data)
    reset_attempts(f"reset:{request.remote_addr}")
    return jsonify({"message": "Password has been reset", "user": user.to_dict()})


@auth_bp.route("/guest", methods=["POST"])
def create_guest():
    form = load_form(GuestForm)
    ttl = timedelta(hours=int(current_app.config.get("GUEST_TTL_HOURS", 24)))
    guest = Guest(
        name=form.name.data.strip(),
        contact_number=form.contact_number.data.strip(),
        email=(form.email.data or "").strip().lower() or None,
        intent=(form.intent.data or "").strip() or None,
        session_token=generate_token(32),
        expires_at=datetime.utcnow() + ttl,
    )
    db.session.add(guest)
    db.session.flush()
    log_action("GUEST_SESSION_CREATED", guest)
    db.session.commit()
    current_app.logger.info("guest_session_created", extra={"guest_id": guest.id})

    token = create_access_token(guest.id, GUEST_ROLE, kind="guest", expires_delta=ttl)
    return _token_response(
        {"guest": guest.to_dict(), "sessionToken": guest.session_token},
        token,
        status=201,
        max_age=int(ttl.total_seconds()),
    )
