"""Security helpers for headers, bearer tokens, and credential policy."""
import hashlib
import html
import secrets
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from flask import current_app, request
from jose import JWTError, jwt

from extensions import db
from utils.errors import Unauthorized


def sanitize_input(data: Mapping) -> dict:
    """Return a sanitized copy of incoming data to reduce injection risk."""
    sanitized = {}
    for key, value in data.items():
        sanitized[html.escape(str(key))] = html.escape(str(value))
    return sanitized


def apply_security_headers(response, force_https: bool = False):
    """Apply security headers suitable for a JSON API that also serves file downloads."""
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


def hash_value(value: str) -> str:
    """Hex SHA-256 of ``value``; used to store reset tokens without the raw secret."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    """Enforce a sane password baseline for production."""
    if len(password) < 10:
        return False, "Password must be at least 10 characters long."
    if password.lower() == password or password.upper() == password:
        return False, "Use a mix of upper and lower case characters."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    return True, None


class AttemptLimiter:
    """Fixed-window attempt counter keyed by e.g. ``login:<ip>:<identifier>``.

    A key is allowed ``limit`` attempts per window; once the window lapses the
    count starts over. Expired keys are pruned on every hit.
    """

    def __init__(self, window_seconds: float = 900, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, float]] = {}

    def hit(self, key: str, limit: int) -> bool:
        now = self._clock()
        with self._lock:
            self._prune(now)
            count, started = self._attempts.get(key, (0, now))
            count += 1
            self._attempts[key] = (count, started)
        return count <= limit

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def __len__(self) -> int:
        return len(self._attempts)

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, started) in self._attempts.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._attempts[key]


def _limiter() -> AttemptLimiter:
    return current_app.extensions["login_limiter"]


def track_attempt(key: str, limit: int = 10) -> bool:
    """Count an attempt for ``key``; False once the limit for the current window is exceeded."""
    return _limiter().hit(key, limit)


def reset_attempts(key: str) -> None:
    _limiter().reset(key)


def create_access_token(
    subject: str,
    role: str,
    kind: str = "user",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Signed JWT carrying ``sub``, ``role`` and ``kind`` (``user`` or ``guest``)."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=int(current_app.config.get("JWT_EXPIRES_MINUTES", 1440)))
    now = datetime.utcnow()
    claims = {"sub": subject, "role": role, "kind": kind, "iat": now, "exp": now + expires_delta}
    return jwt.encode(claims, current_app.config["JWT_SECRET_KEY"], algorithm=current_app.config["JWT_ALGORITHM"])


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, current_app.config["JWT_SECRET_KEY"], algorithms=[current_app.config["JWT_ALGORITHM"]])
    except JWTError as exc:
        raise Unauthorized() from exc


def token_from_request(req) -> Optional[str]:
    header = req.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return req.cookies.get(current_app.config.get("JWT_COOKIE_NAME", "token")) or None


def load_identity_from_token(token: str):
    """Resolve a bearer token to an active ``User`` or an unexpired ``Guest``; ``None`` otherwise."""
    from models import Guest, User  # Local import to avoid circular dependency

    try:
        claims = decode_token(token)
    except Unauthorized:
        return None
    subject = claims.get("sub")
    if not subject:
        return None
    if claims.get("kind") == "guest":
        guest = db.session.get(Guest, str(subject))
        if guest is None or guest.is_expired:
            return None
        return guest
    user = db.session.get(User, str(subject))
    if user is None or not user.is_active:
        return None
    return user
