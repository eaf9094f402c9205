"""Blueprint registration and public routes."""
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Official
from .admin import admin_bp
from .announcements import announcements_bp
from .auth import auth_bp
from .document_requests import document_requests_bp
from .inquiries import inquiries_bp
from .messages import messages_bp
from .notifications import notifications_bp
from .processed_documents import processed_documents_bp
from .templates import templates_bp
from .verification import verification_bp

main_bp = Blueprint("main", __name__)

API_BLUEPRINTS = [
    auth_bp,
    document_requests_bp,
    templates_bp,
    processed_documents_bp,
    notifications_bp,
    inquiries_bp,
    messages_bp,
    admin_bp,
    verification_bp,
    announcements_bp,
]


@main_bp.route("/healthz", methods=["GET"])
def healthz():
    try:
        db.session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        current_app.logger.exception("Health check database query failed")
        db.session.rollback()
        database = "unavailable"
    status = 200 if database == "ok" else 503
    return jsonify({"status": "ok" if status == 200 else "degraded", "database": database}), status


@main_bp.route("/api/officials", methods=["GET"])
def public_officials():
    items = Official.query.filter_by(is_active=True).order_by(Official.display_order, Official.name).all()
    return jsonify({"officials": [o.to_dict() for o in items]})


__all__ = ["main_bp", "API_BLUEPRINTS"]
