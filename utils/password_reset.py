"""Forgot-password tokens: emailed links or six-digit codes, stored hashed and used once."""
import secrets
from datetime import datetime, timedelta
from typing import Tuple

from flask import current_app

from extensions import db
from models import RESET_MODES, PasswordResetToken, User
from utils.decorators import log_action
from utils.errors import ConflictError, GoneError, NotFoundError, ValidationError
from utils.security import generate_token, hash_value, password_meets_policy

OTP_ATTEMPTS = 5


def _new_secret(mode: str) -> str:
    if mode == "otp":
        return f"{secrets.randbelow(10 ** 6):06d}"
    return generate_token(32)


def issue_reset_token(user: User, mode: str = "link") -> Tuple[str, datetime]:
    """Replace any outstanding token for ``user``; returns ``(secret, expires_at)``.

    Only the digest is persisted, so the secret exists once: in the email.
    """
    if mode not in RESET_MODES:
        raise ValidationError(f"Unsupported reset mode: {mode}", errors={"mode": ["Use link or otp."]})
    minutes_key = "PASSWORD_RESET_OTP_TTL_MINUTES" if mode == "otp" else "PASSWORD_RESET_TTL_MINUTES"
    expires_at = datetime.utcnow() + timedelta(minutes=int(current_app.config.get(minutes_key, 15)))

    PasswordResetToken.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    for _ in range(OTP_ATTEMPTS):
        secret = _new_secret(mode)
        digest = hash_value(secret)
        # Six digits are shared by every account; skip a code another user currently holds.
        if not PasswordResetToken.query.filter_by(token_hash=digest).first():
            break
    else:
        raise ConflictError("Could not issue a reset code; try again")

    db.session.add(PasswordResetToken(user_id=user.id, token_hash=digest, mode=mode, expires_at=expires_at))
    log_action("PASSWORD_RESET_REQUESTED", user, context=f"mode:{mode}")
    db.session.commit()
    current_app.logger.info("password_reset_issued", extra={"user_id": user.id, "mode": mode})
    return secret, expires_at


def consume_reset_token(secret: str, new_password: str) -> User:
    """Set ``new_password`` for the token's owner and burn the token.

    Unknown or already used tokens are 404, lapsed ones 410.
    """
    password_ok, reason = password_meets_policy(new_password or "")
    if not password_ok:
        raise ValidationError(reason, errors={"password": [reason]})

    record = PasswordResetToken.query.filter_by(token_hash=hash_value((secret or "").strip())).first()
    if record is None or record.used_at is not None:
        raise NotFoundError("Invalid or expired token")
    if record.is_expired:
        raise GoneError("Reset token has expired")

    used = PasswordResetToken.query.filter(
        PasswordResetToken.id == record.id, PasswordResetToken.used_at.is_(None)
    ).update({"used_at": datetime.utcnow()}, synchronize_session=False)
    if not used:
        db.session.rollback()
        raise NotFoundError("Invalid or expired token")

    user = db.session.get(User, record.user_id)
    if user is None or not user.is_active:
        db.session.rollback()
        raise NotFoundError("Invalid or expired token")
    user.set_password(new_password)
    PasswordResetToken.query.filter(
        PasswordResetToken.user_id == user.id, PasswordResetToken.id != record.id
    ).delete(synchronize_session=False)
    log_action("PASSWORD_RESET", user)
    db.session.commit()
    current_app.logger.info("password_reset_completed", extra={"user_id": user.id})
    return user
