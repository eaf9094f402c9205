"""Barangay announcements: public feed plus admin management with an optional picture."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError
from wtforms import BooleanField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional

from extensions import db
from models import Announcement
from routes.forms import ApiForm, int_arg, load_form, send_bytes
from utils.blob_store import get_blob_store
from utils.decorators import log_action, roles_required
from utils.errors import DependencyError, NotFoundError
from utils.image_utils import get_mime_type, validate_image

announcements_bp = Blueprint("announcements", __name__, url_prefix="/api")


class AnnouncementForm(ApiForm):
    text = TextAreaField("Text", validators=[DataRequired(), Length(max=5000)])
    remove_image = BooleanField("Remove image", validators=[Optional()])


def _announcement_or_404(announcement_id: str) -> Announcement:
    announcement = db.session.get(Announcement, announcement_id)
    if not announcement:
        raise NotFoundError("Announcement not found")
    return announcement


def _store_image():
    upload = request.files.get("image")
    if not upload:
        return None
    content, ext = validate_image(upload, max_bytes=int(current_app.config.get("MAX_UPLOAD_BYTES", 8 * 1024 * 1024)))
    stored = get_blob_store().put("announcements", content, extension=f".{ext}")
    return stored["key"], get_mime_type(ext)


def _list(limit_default: int):
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", limit_default)
    query = Announcement.query
    total = query.count()
    items = query.order_by(Announcement.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"announcements": [a.to_dict() for a in items], "total": total, "page": page, "limit": limit})


@announcements_bp.route("/announcements", methods=["GET"])
def public_announcements():
    return _list(10)


@announcements_bp.route("/announcements/<string:announcement_id>", methods=["GET"])
def get_announcement(announcement_id):
    return jsonify({"announcement": _announcement_or_404(announcement_id).to_dict()})


@announcements_bp.route("/announcements/<string:announcement_id>/image", methods=["GET"])
def announcement_image(announcement_id):
    announcement = _announcement_or_404(announcement_id)
    if not announcement.image_key:
        raise NotFoundError("Announcement has no image")
    data = get_blob_store().get("announcements", announcement.image_key)
    return send_bytes(data, announcement.image_content_type, announcement.image_key, as_attachment=False)


@announcements_bp.route("/admin/announcements", methods=["GET"])
@roles_required("admin")
def list_announcements():
    return _list(20)


@announcements_bp.route("/admin/announcements", methods=["POST"])
@roles_required("admin")
def create_announcement():
    form = load_form(AnnouncementForm)
    image = _store_image()
    try:
        announcement = Announcement(text=form.text.data.strip(), created_by_id=current_user.id)
        if image:
            announcement.image_key, announcement.image_content_type = image
        db.session.add(announcement)
        db.session.flush()
        log_action("ANNOUNCEMENT_CREATED", current_user, context=f"announcement:{announcement.id}")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        if image:
            get_blob_store().delete("announcements", image[0])
        raise DependencyError("Unable to save announcement", dependency="database") from exc
    current_app.logger.info("announcement_created", extra={"announcement_id": announcement.id, "has_image": bool(image)})
    return jsonify({"announcement": announcement.to_dict()}), 201


@announcements_bp.route("/admin/announcements/<string:announcement_id>", methods=["PUT"])
@roles_required("admin")
def update_announcement(announcement_id):
    announcement = _announcement_or_404(announcement_id)
    form = load_form(AnnouncementForm)
    replaced = None
    image = _store_image()
    if image or form.remove_image.data:
        replaced = announcement.image_key
        announcement.image_key, announcement.image_content_type = image or (None, None)
    announcement.text = form.text.data.strip()
    log_action("ANNOUNCEMENT_UPDATED", current_user, context=f"announcement:{announcement.id}")
    db.session.commit()
    if replaced:
        get_blob_store().delete("announcements", replaced)
    return jsonify({"announcement": announcement.to_dict()})


@announcements_bp.route("/admin/announcements/<string:announcement_id>", methods=["DELETE"])
@roles_required("admin")
def delete_announcement(announcement_id):
    announcement = _announcement_or_404(announcement_id)
    image_key = announcement.image_key
    db.session.delete(announcement)
    log_action("ANNOUNCEMENT_DELETED", current_user, context=f"announcement:{announcement_id}")
    db.session.commit()
    # A blob left behind by a failed delete is reclaimed by the sweep.
    if image_key:
        get_blob_store().delete("announcements", image_key)
    return jsonify({"message": "Announcement deleted"})
