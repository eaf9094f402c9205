"""Service error taxonomy and JSON error handlers."""
import re
from typing import Dict, Iterable, Optional

from flask import Flask, jsonify, request
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from extensions import db


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> Dict:
        payload = {"message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class AuthError(ServiceError):
    status_code = 401
    default_message = "Please authenticate"


class Unauthorized(AuthError):
    pass


class Forbidden(AuthError):
    status_code = 403
    default_message = "Access denied"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(ServiceError):
    status_code = 409
    default_message = "Conflict"


class GoneError(ServiceError):
    status_code = 410
    default_message = "Resource expired"


class DependencyError(ServiceError):
    """A downstream service (mail, SMS, blob storage) failed."""

    status_code = 500
    default_message = "A required service is unavailable"

    def __init__(self, message: Optional[str] = None, dependency: str = "unknown", **details) -> None:
        super().__init__(message, **details)
        self.dependency = dependency


class TemplateUnreadable(ValidationError):
    default_message = "Template could not be read as a DOCX document"


class MissingFieldValue(ValidationError):
    default_message = "Missing values for template fields"

    def __init__(self, missing: Iterable[str]) -> None:
        names = sorted(set(missing))
        super().__init__(f"Missing values for: {', '.join(names)}", missing=names)
        self.missing = names


class CodeAssignmentExhausted(ConflictError):
    default_message = "Unable to assign a unique transaction code"


_UNIQUE_SQLITE = re.compile(r"UNIQUE constraint failed: ([\w., ]+)")
_UNIQUE_PG = re.compile(r"Key \(([^)]+)\)=\(([^)]*)\)")


def duplicate_key_value(exc: IntegrityError) -> Dict[str, Optional[str]]:
    """Best-effort extraction of the offending column(s) from a driver error."""
    text = str(getattr(exc, "orig", exc))
    match = _UNIQUE_PG.search(text)
    if match:
        columns = [c.strip() for c in match.group(1).split(",")]
        values = [v.strip() for v in match.group(2).split(",")]
        return dict(zip(columns, values + [None] * (len(columns) - len(values))))
    match = _UNIQUE_SQLITE.search(text)
    if match:
        columns = [c.strip().split(".")[-1] for c in match.group(1).split(",")]
        return {column: None for column in columns}
    return {}


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ServiceError)
    def service_error(error: ServiceError):
        if isinstance(error, DependencyError):
            app.logger.error(
                "Dependency failure",
                extra={"dependency": error.dependency, "path": request.path, "error": error.message},
            )
        elif error.status_code >= 500:
            app.logger.exception("Service error", extra={"path": request.path})
        else:
            app.logger.warning(
                "Request rejected",
                extra={"status": error.status_code, "path": request.path, "method": request.method, "error": error.message},
            )
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(IntegrityError)
    def integrity_error(error: IntegrityError):
        db.session.rollback()
        key_value = duplicate_key_value(error)
        app.logger.warning("Duplicate key", extra={"path": request.path, "key": key_value})
        return jsonify({"message": "Duplicate key error", "keyValue": key_value}), 409

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        if error.code == 404:
            app.logger.warning("404 Not Found", extra={"path": request.path, "method": request.method})
        return jsonify({"message": error.description or error.name}), error.code

    @app.errorhandler(Exception)
    def unexpected_error(error: Exception):
        db.session.rollback()
        app.logger.exception("500 Internal Server Error", extra={"path": request.path})
        return jsonify({"message": "Internal server error"}), 500
