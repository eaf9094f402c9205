"""Authorization decorators for role-based access control, plus audit helpers."""
from functools import wraps
from typing import Optional

from flask import current_app, has_request_context, request
from flask_login import current_user

from extensions import db
from models import AuditLog
from utils.errors import Forbidden, Unauthorized


def log_action(action: str, user=None, context: Optional[str] = None) -> AuditLog:
    """Stage an audit entry; the caller's commit persists it."""
    if user is not None and getattr(user, "is_guest", False):
        context = context or f"guest:{user.id}"
        user = None
    entry = AuditLog(
        user_id=user.id if user else None,
        action_type=action,
        ip_address=request.remote_addr if has_request_context() else None,
        user_agent=request.headers.get("User-Agent", "unknown")[:255] if has_request_context() else "cli",
        context_entity=context,
    )
    db.session.add(entry)
    return entry


def _require_identity(allow_guest: bool) -> None:
    if not current_user or not current_user.is_authenticated:
        raise Unauthorized()
    if current_user.is_guest and not allow_guest:
        raise Forbidden("Guest sessions cannot access this resource")


def auth_required(allow_guest: bool = False):
    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            _require_identity(allow_guest)
            return view_func(*args, **kwargs)

        return wrapped

    return decorator


def roles_required(*roles):
    allowed = {r.lower() for r in roles}

    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            _require_identity("guest" in allowed)
            if current_user.role_name in allowed:
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": current_user.role_name, "path": request.path},
            )
            log_action("UNAUTHORIZED_ACCESS", current_user, context=request.path[:120])
            db.session.commit()
            raise Forbidden()

        return wrapped

    return decorator
